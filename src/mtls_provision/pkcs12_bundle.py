from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable

from asn1crypto import pkcs12 as asn1_pkcs12
from asn1crypto import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from .exceptions import PackagingError, format_exception
from .files import PRIVATE_FILE_MODE, atomic_write_bytes
from .identity import PartyIdentity, key_matches_certificate
from .password_source import open_password
from .profiles import requires_legacy_bundle
from .x509_ops import load_certificate, to_cryptography_certificate

_logger = logging.getLogger("mtls_provision.pkcs12")


class BundleMode(str, Enum):
    MODERN = "modern"
    LEGACY = "legacy"


@dataclass(frozen=True)
class BundleSuite:
    """PKCS#12 protection parameters for one bundle mode."""

    mode: BundleMode
    key_cert_algorithm: pkcs12.PBES
    mac_hash: type[hashes.HashAlgorithm]
    kdf_rounds: int
    filename: str


# Iteration counts follow the `openssl pkcs12 -export` defaults.
BUNDLE_SUITES: dict[BundleMode, BundleSuite] = {
    BundleMode.MODERN: BundleSuite(
        mode=BundleMode.MODERN,
        key_cert_algorithm=pkcs12.PBES.PBESv2SHA256AndAES256CBC,
        mac_hash=hashes.SHA256,
        kdf_rounds=2048,
        filename="key.p12",
    ),
    BundleMode.LEGACY: BundleSuite(
        mode=BundleMode.LEGACY,
        key_cert_algorithm=pkcs12.PBES.PBESv1SHA1And3KeyTripleDESCBC,
        mac_hash=hashes.SHA1,
        kdf_rounds=2048,
        filename="key_legacy.p12",
    ),
}


@dataclass(frozen=True)
class BundleDescription:
    """Protection details read back from an encoded bundle."""

    mode: BundleMode
    mac_digest: str
    mac_iterations: int


@dataclass(frozen=True)
class LoadedBundle:
    private_key: rsa.RSAPrivateKey
    certificate: x509.Certificate
    friendly_name: str | None


def resolve_bundle_mode(mode: BundleMode | str) -> BundleMode:
    if isinstance(mode, BundleMode):
        return mode
    try:
        return BundleMode(str(mode).strip().lower())
    except ValueError as exc:
        available = ", ".join(m.value for m in BundleMode)
        raise PackagingError(
            f"Unsupported bundle mode '{mode}'. Use one of: {available}."
        ) from exc


def bundle_modes_for(consumers: Iterable[str]) -> tuple[BundleMode, ...]:
    """Modern always; legacy only when some consumer cannot parse modern."""
    if requires_legacy_bundle(consumers):
        return (BundleMode.MODERN, BundleMode.LEGACY)
    return (BundleMode.MODERN,)


def bundle_filename(mode: BundleMode | str) -> str:
    return BUNDLE_SUITES[resolve_bundle_mode(mode)].filename


def _encryption_for(
    mode: BundleMode, password: bytes
) -> serialization.KeySerializationEncryption:
    suite = BUNDLE_SUITES[mode]
    return (
        serialization.PrivateFormat.PKCS12.encryption_builder()
        .kdf_rounds(suite.kdf_rounds)
        .key_cert_algorithm(suite.key_cert_algorithm)
        .hmac_hash(suite.mac_hash())
        .build(password)
    )


def package_bundle(
    private_key: rsa.RSAPrivateKey,
    certificate: x509.Certificate,
    password: bytes | bytearray,
    mode: BundleMode | str,
    *,
    friendly_name: str | None = None,
) -> bytes:
    """
    Encode a key and its certificate as a password-protected PKCS#12 bundle
    using the suite of the requested mode.
    """
    resolved_mode = resolve_bundle_mode(mode)
    if not password:
        raise PackagingError("Bundle password must not be empty.")
    if not key_matches_certificate(private_key, certificate):
        raise PackagingError("Private key does not match the certificate public key.")

    # The encryption builder rejects anything but immutable bytes, so this
    # one copy of the secret cannot be wiped; the caller's buffer still is.
    try:
        return pkcs12.serialize_key_and_certificates(
            friendly_name.encode("utf-8") if friendly_name else None,
            private_key,
            to_cryptography_certificate(certificate),
            None,
            _encryption_for(resolved_mode, bytes(password)),
        )
    except Exception as exc:
        raise PackagingError(
            f"Failed to encode {resolved_mode.value} bundle: {format_exception(exc)}"
        ) from exc


def write_bundle(
    identity: PartyIdentity,
    directory: str | Path,
    password_file: str | Path,
    mode: BundleMode | str,
) -> Path:
    resolved_mode = resolve_bundle_mode(mode)
    target = Path(directory) / BUNDLE_SUITES[resolved_mode].filename

    with open_password(password_file) as password:
        payload = package_bundle(
            identity.private_key,
            identity.certificate,
            password,
            resolved_mode,
            friendly_name=identity.name,
        )

    try:
        atomic_write_bytes(target, payload, mode=PRIVATE_FILE_MODE)
    except OSError as exc:
        _logger.exception("Failed to write bundle path=%s", target)
        raise PackagingError(
            f"Failed to write {resolved_mode.value} bundle to {target}: "
            f"{format_exception(exc)}"
        ) from exc

    _logger.info(
        "Wrote %s bundle party=%s path=%s", resolved_mode.value, identity.name, target
    )
    return target


def load_bundle(data: bytes, password: bytes | bytearray) -> LoadedBundle:
    # load_pkcs12 takes bytes only; same unwipeable copy as in package_bundle.
    try:
        loaded = pkcs12.load_pkcs12(data, bytes(password))
    except Exception as exc:
        raise PackagingError(f"Failed to decrypt bundle: {format_exception(exc)}") from exc

    if loaded.key is None or loaded.cert is None:
        raise PackagingError("Bundle does not contain both a private key and a certificate.")
    if not isinstance(loaded.key, rsa.RSAPrivateKey):
        raise PackagingError("Bundle private key is not an RSA key.")

    certificate = load_certificate(
        loaded.cert.certificate.public_bytes(serialization.Encoding.DER)
    )
    friendly_name = loaded.cert.friendly_name
    return LoadedBundle(
        private_key=loaded.key,
        certificate=certificate,
        friendly_name=friendly_name.decode("utf-8") if friendly_name else None,
    )


def load_bundle_file(path: str | Path, password_file: str | Path) -> LoadedBundle:
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise PackagingError(
            f"Bundle {path} is unreadable: {format_exception(exc)}"
        ) from exc
    with open_password(password_file) as password:
        return load_bundle(data, password)


def describe_bundle(data: bytes) -> BundleDescription:
    try:
        pfx = asn1_pkcs12.Pfx.load(data)
        mac_data = pfx["mac_data"]
        mac_digest = mac_data["mac"]["digest_algorithm"]["algorithm"].native
        mac_iterations = mac_data["iterations"].native
    except (ValueError, KeyError, TypeError) as exc:
        raise PackagingError(f"Unable to parse bundle: {format_exception(exc)}") from exc

    mode = BundleMode.LEGACY if mac_digest == "sha1" else BundleMode.MODERN
    return BundleDescription(
        mode=mode,
        mac_digest=str(mac_digest),
        mac_iterations=int(mac_iterations),
    )
