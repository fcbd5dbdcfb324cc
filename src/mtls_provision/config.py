from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

from .allowlist import (
    ALLOWLIST_FILENAME,
    FingerprintFormat,
    resolve_fingerprint_format,
    validate_label,
)
from .exceptions import PackagingError, ProvisionConfigurationError
from .identity import validate_generation_request
from .password_source import same_password
from .profiles import MAX_VALIDITY_DAYS, get_consumer_profile
from .x509_ops import DistinguishedName

PASSWORD_FILENAME = "password.txt"

_TRUTHY = {"1", "true", "yes", "on"}


def _string_list(
    payload: Mapping[str, Any], key: str, default: tuple[str, ...], party: str
) -> tuple[str, ...]:
    value = payload.get(key)
    if value is None:
        return default
    if not isinstance(value, (list, tuple)):
        raise ProvisionConfigurationError(
            f"party '{party}': '{key}' must be a list of strings, got {type(value).__name__}."
        )
    for item in value:
        if not isinstance(item, str):
            raise ProvisionConfigurationError(
                f"party '{party}': '{key}' entries must be strings, got {item!r}."
            )
    return tuple(value)


@dataclass(frozen=True)
class PartyConfig:
    """Identity and packaging settings for one side of the trust relationship."""

    name: str
    subject: DistinguishedName
    dns_names: tuple[str, ...] = ()
    ip_addresses: tuple[str, ...] = ()
    validity_days: int = MAX_VALIDITY_DAYS
    signature_hash: str = "sha256"
    password_file: Path | None = None
    # TLS stacks that load this party's PKCS#12 bundle.
    bundle_consumers: tuple[str, ...] = ("openssl3",)
    # TLS stacks that validate this party's certificate as a peer.
    certificate_consumers: tuple[str, ...] = ()
    allowlist_label: str | None = None

    @property
    def label(self) -> str:
        return self.allowlist_label or self.name

    @property
    def consumers(self) -> tuple[str, ...]:
        return (*self.bundle_consumers, *self.certificate_consumers)

    def directory(self, output_dir: Path) -> Path:
        return output_dir / self.name

    def resolved_password_file(self, output_dir: Path) -> Path:
        return self.password_file or self.directory(output_dir) / PASSWORD_FILENAME

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PartyConfig":
        if "name" not in payload:
            raise ProvisionConfigurationError("party is missing 'name'.")
        subject_raw = payload.get("subject") or {"common_name": payload["name"]}
        if not isinstance(subject_raw, Mapping):
            raise ProvisionConfigurationError("party 'subject' must be an object.")
        try:
            subject = DistinguishedName.from_dict(dict(subject_raw))
            validity_days = int(payload.get("validity_days", MAX_VALIDITY_DAYS))
        except (TypeError, ValueError) as exc:
            raise ProvisionConfigurationError(
                f"party '{payload['name']}': {exc}"
            ) from exc
        name = str(payload["name"])
        password_file = payload.get("password_file")
        return cls(
            name=name,
            subject=subject,
            dns_names=_string_list(payload, "dns_names", (), name),
            ip_addresses=_string_list(payload, "ip_addresses", (), name),
            validity_days=validity_days,
            signature_hash=str(payload.get("signature_hash", "sha256")),
            password_file=Path(password_file) if password_file else None,
            bundle_consumers=_string_list(payload, "bundle_consumers", ("openssl3",), name),
            certificate_consumers=_string_list(
                payload, "certificate_consumers", (), name
            ),
            allowlist_label=payload.get("allowlist_label"),
        )


def default_server() -> PartyConfig:
    return PartyConfig(
        name="signer",
        subject=DistinguishedName(common_name="signer.local"),
        dns_names=("signer.local", "localhost"),
        ip_addresses=("127.0.0.1",),
        bundle_consumers=("java-keystore",),
        certificate_consumers=("openssl3", "apple-security-framework"),
    )


def default_client() -> PartyConfig:
    return PartyConfig(
        name="client",
        subject=DistinguishedName(common_name="client.local"),
        dns_names=("client.local", "localhost"),
        ip_addresses=("127.0.0.1",),
        bundle_consumers=("openssl3", "apple-security-framework"),
        certificate_consumers=("java-keystore",),
    )


@dataclass(frozen=True)
class ProvisionConfig:
    """Settings for one server/client provisioning run."""

    output_dir: Path
    server: PartyConfig = field(default_factory=default_server)
    client: PartyConfig = field(default_factory=default_client)
    fingerprint_format: FingerprintFormat = FingerprintFormat.HEX
    allowlist_filename: str = ALLOWLIST_FILENAME
    allow_shared_password: bool = False

    @property
    def server_dir(self) -> Path:
        return self.server.directory(self.output_dir)

    @property
    def client_dir(self) -> Path:
        return self.client.directory(self.output_dir)

    @property
    def allowlist_path(self) -> Path:
        return self.server_dir / self.allowlist_filename

    @property
    def trust_store_path(self) -> Path:
        return self.client_dir / f"{self.server.name}.pem"

    def password_file(self, party: PartyConfig) -> Path:
        return party.resolved_password_file(self.output_dir)

    @classmethod
    def from_mapping(
        cls, payload: Mapping[str, Any], *, base_dir: Path | None = None
    ) -> "ProvisionConfig":
        base = base_dir or Path.cwd()
        output_dir = Path(str(payload.get("output_dir", "tls")))
        if not output_dir.is_absolute():
            output_dir = base / output_dir

        parties: dict[str, PartyConfig] = {}
        for role, default in (("server", default_server), ("client", default_client)):
            raw = payload.get(role)
            if raw is None:
                parties[role] = default()
                continue
            if not isinstance(raw, Mapping):
                raise ProvisionConfigurationError(f"'{role}' must be an object.")
            party = PartyConfig.from_dict(raw)
            if party.password_file is not None and not party.password_file.is_absolute():
                party = replace(party, password_file=base / party.password_file)
            parties[role] = party

        try:
            fingerprint_format = resolve_fingerprint_format(
                payload.get("fingerprint_format", FingerprintFormat.HEX)
            )
        except ValueError as exc:
            raise ProvisionConfigurationError(str(exc)) from exc

        return cls(
            output_dir=output_dir,
            server=parties["server"],
            client=parties["client"],
            fingerprint_format=fingerprint_format,
            allowlist_filename=str(payload.get("allowlist_filename", ALLOWLIST_FILENAME)),
            allow_shared_password=bool(payload.get("allow_shared_password", False)),
        )

    @classmethod
    def from_file(cls, path: str | Path) -> "ProvisionConfig":
        source = Path(path)
        if not source.exists():
            raise ProvisionConfigurationError(f"Config file does not exist: {source}")
        try:
            payload = json.loads(source.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ProvisionConfigurationError(
                f"Config file {source} is not valid JSON: {exc}"
            ) from exc
        if not isinstance(payload, dict):
            raise ProvisionConfigurationError("Config root must be a JSON object.")
        return cls.from_mapping(payload, base_dir=source.resolve().parent)

    @classmethod
    def from_env(cls) -> "ProvisionConfig":
        config_path = os.environ.get("MTLS_PROVISION_CONFIG")
        if config_path:
            config = cls.from_file(config_path)
        else:
            config = cls.from_mapping({})

        output_dir = os.environ.get("MTLS_PROVISION_OUTPUT_DIR")
        if output_dir:
            config = replace(config, output_dir=Path(output_dir))

        days_raw = os.environ.get("MTLS_PROVISION_VALIDITY_DAYS")
        if days_raw:
            try:
                days = int(days_raw)
            except ValueError as exc:
                raise ProvisionConfigurationError(
                    f"MTLS_PROVISION_VALIDITY_DAYS must be an integer, got: {days_raw}"
                ) from exc
            config = replace(
                config,
                server=replace(config.server, validity_days=days),
                client=replace(config.client, validity_days=days),
            )

        fmt_raw = os.environ.get("MTLS_PROVISION_FINGERPRINT_FORMAT")
        if fmt_raw:
            try:
                config = replace(
                    config, fingerprint_format=resolve_fingerprint_format(fmt_raw)
                )
            except ValueError as exc:
                raise ProvisionConfigurationError(str(exc)) from exc

        shared_raw = os.environ.get("MTLS_PROVISION_ALLOW_SHARED_PASSWORD")
        if shared_raw:
            config = replace(
                config, allow_shared_password=shared_raw.strip().lower() in _TRUTHY
            )
        return config

    def validate(self) -> None:
        """
        Preflight check run before any key material is generated.

        Password files that cannot be read yet are left for the packaging
        step to report.
        """
        if self.server.name == self.client.name:
            raise ProvisionConfigurationError(
                f"Server and client must have distinct names, both are '{self.server.name}'."
            )
        for party in (self.server, self.client):
            if not party.name.strip() or "/" in party.name or party.name in {".", ".."}:
                raise ProvisionConfigurationError(f"Invalid party name: {party.name!r}")
            for consumer in party.consumers:
                try:
                    get_consumer_profile(consumer)
                except ValueError as exc:
                    raise ProvisionConfigurationError(
                        f"party '{party.name}': {exc}"
                    ) from exc
            validate_generation_request(
                subject=party.subject,
                validity_days=party.validity_days,
                dns_names=party.dns_names,
                ip_addresses=party.ip_addresses,
                consumers=party.consumers,
                signature_hash=party.signature_hash,
            )
        try:
            validate_label(self.client.label)
        except ValueError as exc:
            raise ProvisionConfigurationError(str(exc)) from exc

        server_password = self.password_file(self.server)
        client_password = self.password_file(self.client)
        if self.allow_shared_password:
            return
        if server_password.resolve() == client_password.resolve():
            raise ProvisionConfigurationError(
                "Server and client bundles share one password file; "
                "set allow_shared_password to permit this."
            )
        try:
            shared = same_password(server_password, client_password)
        except PackagingError:
            return
        if shared:
            raise ProvisionConfigurationError(
                "Server and client password files hold the same secret; "
                "set allow_shared_password to permit this."
            )
