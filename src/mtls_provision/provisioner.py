from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, TypeVar

from .allowlist import (
    TrustAllowlist,
    TrustRecord,
    certificate_fingerprint,
    export_fingerprint,
    normalize_fingerprint,
)
from .config import PartyConfig, ProvisionConfig
from .exceptions import ExportError, ProvisionError, ProvisionStepError, format_exception
from .files import PUBLIC_FILE_MODE, atomic_write_bytes
from .identity import (
    CERT_FILENAME,
    KEY_FILENAME,
    PartyIdentity,
    generate_identity,
    key_matches_certificate,
    load_identity,
    write_identity,
)
from .pkcs12_bundle import (
    BUNDLE_SUITES,
    BundleMode,
    bundle_modes_for,
    describe_bundle,
    load_bundle_file,
    write_bundle,
)
from .profiles import validity_ceiling_days
from .x509_ops import certificate_validity_days, load_certificate

STEP_PREFLIGHT = "preflight"
STEP_CLEAN = "clean"
STEP_GENERATE_IDENTITY = "generate-identity"
STEP_PACKAGE_BUNDLES = "package-bundles"
STEP_EXPORT_CERTIFICATE = "export-certificate"
STEP_EXPORT_FINGERPRINT = "export-fingerprint"

_logger = logging.getLogger("mtls_provision.provisioner")

T = TypeVar("T")


@dataclass(frozen=True)
class StepResult:
    party: str
    step: str
    artifacts: tuple[Path, ...]


@dataclass
class ProvisionReport:
    """Artifacts produced by a completed provisioning run."""

    steps: list[StepResult] = field(default_factory=list)
    server: PartyIdentity | None = None
    client: PartyIdentity | None = None
    allowlist_record: TrustRecord | None = None

    @property
    def artifacts(self) -> list[Path]:
        return [path for step in self.steps for path in step.artifacts]


@dataclass(frozen=True)
class VerificationIssue:
    party: str
    artifact: Path
    message: str

    def __str__(self) -> str:
        return f"[{self.party}] {self.artifact}: {self.message}"


class Provisioner:
    """
    Runs the provisioning steps for the server and client parties in order.

    Every step must succeed before the next one starts. A failure raises
    ProvisionStepError naming the party and step; files written by earlier
    steps stay on disk for inspection.
    """

    def __init__(self, config: ProvisionConfig) -> None:
        self._config = config

    @property
    def config(self) -> ProvisionConfig:
        return self._config

    def _run_step(self, party: str, step: str, action: Callable[[], T]) -> T:
        _logger.info("Starting step=%s party=%s", step, party)
        try:
            result = action()
        except (ProvisionError, OSError) as exc:
            _logger.error(
                "Step failed step=%s party=%s error=%s", step, party, format_exception(exc)
            )
            raise ProvisionStepError(party, step, format_exception(exc)) from exc
        _logger.info("Finished step=%s party=%s", step, party)
        return result

    def run(self, *, clean: bool = False) -> ProvisionReport:
        config = self._config
        server = config.server
        client = config.client
        report = ProvisionReport()

        self._run_step("all", STEP_PREFLIGHT, config.validate)
        if clean:
            self._run_step(
                "all",
                STEP_CLEAN,
                lambda: [clear_party_outputs(config, party) for party in (server, client)],
            )

        server_identity = self._run_step(
            server.name,
            STEP_GENERATE_IDENTITY,
            lambda: self._generate(server),
        )
        report.server = server_identity
        report.steps.append(
            StepResult(
                server.name,
                STEP_GENERATE_IDENTITY,
                (server_identity.key_path, server_identity.cert_path),
            )
        )

        server_bundles = self._run_step(
            server.name,
            STEP_PACKAGE_BUNDLES,
            lambda: self._package(server, server_identity),
        )
        report.steps.append(StepResult(server.name, STEP_PACKAGE_BUNDLES, server_bundles))

        trust_store = self._run_step(
            server.name,
            STEP_EXPORT_CERTIFICATE,
            lambda: self._export_certificate(server_identity),
        )
        report.steps.append(StepResult(server.name, STEP_EXPORT_CERTIFICATE, (trust_store,)))

        client_identity = self._run_step(
            client.name,
            STEP_GENERATE_IDENTITY,
            lambda: self._generate(client),
        )
        report.client = client_identity
        report.steps.append(
            StepResult(
                client.name,
                STEP_GENERATE_IDENTITY,
                (client_identity.key_path, client_identity.cert_path),
            )
        )

        client_bundles = self._run_step(
            client.name,
            STEP_PACKAGE_BUNDLES,
            lambda: self._package(client, client_identity),
        )
        report.steps.append(StepResult(client.name, STEP_PACKAGE_BUNDLES, client_bundles))

        record = self._run_step(
            client.name,
            STEP_EXPORT_FINGERPRINT,
            lambda: export_fingerprint(
                client_identity.certificate,
                client.label,
                config.allowlist_path,
                fmt=config.fingerprint_format,
            ),
        )
        report.allowlist_record = record
        report.steps.append(
            StepResult(client.name, STEP_EXPORT_FINGERPRINT, (config.allowlist_path,))
        )

        _logger.info(
            "Provisioning complete server=%s client=%s artifacts=%d",
            server.name,
            client.name,
            len(report.artifacts),
        )
        return report

    def _generate(self, party: PartyConfig) -> PartyIdentity:
        identity = generate_identity(
            party.name,
            party.subject,
            validity_days=party.validity_days,
            dns_names=party.dns_names,
            ip_addresses=party.ip_addresses,
            consumers=party.consumers,
            signature_hash=party.signature_hash,
        )
        return write_identity(identity, party.directory(self._config.output_dir))

    def _package(self, party: PartyConfig, identity: PartyIdentity) -> tuple[Path, ...]:
        directory = party.directory(self._config.output_dir)
        password_file = self._config.password_file(party)
        modes = bundle_modes_for(party.bundle_consumers)
        written = tuple(
            write_bundle(identity, directory, password_file, mode) for mode in modes
        )

        if BundleMode.LEGACY not in modes:
            stale = directory / BUNDLE_SUITES[BundleMode.LEGACY].filename
            if stale.exists():
                stale.unlink()
                _logger.info(
                    "Removed legacy bundle no longer required party=%s path=%s",
                    party.name,
                    stale,
                )
        return written

    def _export_certificate(self, identity: PartyIdentity) -> Path:
        target = self._config.trust_store_path
        try:
            atomic_write_bytes(target, identity.certificate_pem, mode=PUBLIC_FILE_MODE)
        except OSError as exc:
            raise ExportError(
                f"Unable to export certificate to {target}: {format_exception(exc)}"
            ) from exc
        _logger.info("Exported party=%s certificate to %s", identity.name, target)
        return target

    def verify(self) -> list[VerificationIssue]:
        """
        Re-read every artifact of a previous run and report inconsistencies,
        such as bundles built from another key or a stale allowlist line.
        """
        config = self._config
        issues: list[VerificationIssue] = []
        identities: dict[str, PartyIdentity] = {}

        for party in (config.server, config.client):
            directory = party.directory(config.output_dir)
            key_path = directory / KEY_FILENAME
            cert_path = directory / CERT_FILENAME
            try:
                identity = load_identity(key_path, cert_path, name=party.name)
            except ProvisionError as exc:
                issues.append(VerificationIssue(party.name, cert_path, str(exc)))
                continue
            identities[party.name] = identity

            ceiling = validity_ceiling_days(party.consumers)
            days = certificate_validity_days(identity.certificate)
            if days > ceiling:
                issues.append(
                    VerificationIssue(
                        party.name,
                        cert_path,
                        f"validity of {days:g} days exceeds the {ceiling}-day ceiling",
                    )
                )

            for mode in bundle_modes_for(party.bundle_consumers):
                bundle_path = directory / BUNDLE_SUITES[mode].filename
                issues.extend(
                    self._verify_bundle(party, identity, bundle_path, mode)
                )

        server_identity = identities.get(config.server.name)
        if server_identity is not None:
            issues.extend(self._verify_trust_store(server_identity))

        client_identity = identities.get(config.client.name)
        if client_identity is not None:
            issues.extend(self._verify_allowlist(client_identity))

        for issue in issues:
            _logger.warning("Verification issue: %s", issue)
        return issues

    def _verify_bundle(
        self,
        party: PartyConfig,
        identity: PartyIdentity,
        bundle_path: Path,
        mode: BundleMode,
    ) -> list[VerificationIssue]:
        if not bundle_path.exists():
            return [VerificationIssue(party.name, bundle_path, f"missing {mode.value} bundle")]
        try:
            description = describe_bundle(bundle_path.read_bytes())
            loaded = load_bundle_file(bundle_path, self._config.password_file(party))
        except (ProvisionError, OSError) as exc:
            return [VerificationIssue(party.name, bundle_path, format_exception(exc))]

        issues: list[VerificationIssue] = []
        if description.mode is not mode:
            issues.append(
                VerificationIssue(
                    party.name,
                    bundle_path,
                    f"expected {mode.value} protection, found {description.mode.value} "
                    f"(MAC {description.mac_digest})",
                )
            )
        if loaded.certificate.dump() != identity.certificate.dump() or not key_matches_certificate(
            loaded.private_key, identity.certificate
        ):
            issues.append(
                VerificationIssue(
                    party.name, bundle_path, "bundle does not hold the current identity"
                )
            )
        return issues

    def _verify_trust_store(self, server_identity: PartyIdentity) -> list[VerificationIssue]:
        path = self._config.trust_store_path
        try:
            exported = load_certificate(path.read_bytes())
        except (OSError, ValueError) as exc:
            return [VerificationIssue(self._config.client.name, path, format_exception(exc))]
        if exported.dump() != server_identity.certificate.dump():
            return [
                VerificationIssue(
                    self._config.client.name,
                    path,
                    f"trusted certificate differs from current {server_identity.name} certificate",
                )
            ]
        return []

    def _verify_allowlist(self, client_identity: PartyIdentity) -> list[VerificationIssue]:
        config = self._config
        path = config.allowlist_path
        label = config.client.label
        try:
            allowlist = TrustAllowlist.load(path)
        except ExportError as exc:
            return [VerificationIssue(config.server.name, path, str(exc))]

        matches = [record for record in allowlist.records if record.label == label]
        if not matches:
            return [VerificationIssue(config.server.name, path, f"no entry for '{label}'")]
        if len(matches) > 1:
            return [
                VerificationIssue(config.server.name, path, f"duplicate entries for '{label}'")
            ]
        expected = certificate_fingerprint(client_identity.certificate)
        if normalize_fingerprint(matches[0].fingerprint) != expected:
            return [
                VerificationIssue(
                    config.server.name,
                    path,
                    f"stale fingerprint for '{label}'",
                )
            ]
        return []


def provision(config: ProvisionConfig, *, clean: bool = False) -> ProvisionReport:
    return Provisioner(config).run(clean=clean)


def clear_party_outputs(config: ProvisionConfig, party: PartyConfig) -> list[Path]:
    """
    Remove generated artifacts of a party so its next run starts clean.
    Password files are operator inputs and are kept.
    """
    directory = party.directory(config.output_dir)
    candidates = [
        directory / KEY_FILENAME,
        directory / CERT_FILENAME,
        *(directory / suite.filename for suite in BUNDLE_SUITES.values()),
    ]
    removed: list[Path] = []
    for path in candidates:
        if path.exists():
            path.unlink()
            removed.append(path)
            _logger.info("Removed artifact party=%s path=%s", party.name, path)
    return removed
