from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from asn1crypto import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .exceptions import (
    IdentityGenerationError,
    ProvisionConfigurationError,
    format_exception,
)
from .files import PRIVATE_FILE_MODE, PUBLIC_FILE_MODE, atomic_write_group
from .profiles import DEFAULT_KEY_PROFILE, IdentityKeyProfile, validity_ceiling_days
from .x509_ops import (
    DistinguishedName,
    certificate_common_name,
    create_self_signed_certificate,
    dump_certificate_pem,
    load_certificate,
    public_key_info_from_der,
    validate_dns_name,
    validate_subject_alt_names,
)

KEY_FILENAME = "key.key"
CERT_FILENAME = "cert.pem"

_logger = logging.getLogger("mtls_provision.identity")

_HASHES: dict[str, type[hashes.HashAlgorithm]] = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}


@dataclass(frozen=True)
class PartyIdentity:
    """A party's key pair and self-signed certificate."""

    name: str
    private_key: rsa.RSAPrivateKey
    certificate: x509.Certificate
    key_path: Path | None = None
    cert_path: Path | None = None

    @property
    def certificate_pem(self) -> bytes:
        return dump_certificate_pem(self.certificate)

    @property
    def private_key_pem(self) -> bytes:
        return serialize_private_key(self.private_key)


def serialize_private_key(private_key: rsa.RSAPrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def public_key_der(private_key: rsa.RSAPrivateKey) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def key_matches_certificate(
    private_key: rsa.RSAPrivateKey, certificate: x509.Certificate
) -> bool:
    certificate_spki = certificate["tbs_certificate"]["subject_public_key_info"].dump()
    return certificate_spki == public_key_der(private_key)


def validate_generation_request(
    *,
    subject: DistinguishedName,
    validity_days: int,
    dns_names: Iterable[str] = (),
    ip_addresses: Iterable[str] = (),
    consumers: Iterable[str] = (),
    signature_hash: str | None = None,
    profile: IdentityKeyProfile = DEFAULT_KEY_PROFILE,
) -> int:
    """
    Check a generation request against the key profile, the subject
    alternative names and the validity ceiling of every consumer. Returns the
    ceiling that was applied.
    """
    try:
        subject.validate()
    except ValueError as exc:
        raise ProvisionConfigurationError(f"Invalid subject: {exc}") from exc
    try:
        validate_subject_alt_names(dns_names, ip_addresses)
    except ValueError as exc:
        raise ProvisionConfigurationError(f"Invalid subject alternative name: {exc}") from exc

    try:
        ceiling = validity_ceiling_days(consumers)
    except ValueError as exc:
        raise ProvisionConfigurationError(str(exc)) from exc
    if validity_days <= 0:
        raise ProvisionConfigurationError(
            f"validity_days must be > 0, got: {validity_days}"
        )
    if validity_days > ceiling:
        raise ProvisionConfigurationError(
            f"Certificate validity of {validity_days} days exceeds the "
            f"{ceiling}-day ceiling of its consumers."
        )

    hash_name = (signature_hash or profile.signature_hash).strip().lower()
    if hash_name not in profile.allowed_signature_hashes or hash_name not in _HASHES:
        allowed = ", ".join(profile.allowed_signature_hashes)
        raise ProvisionConfigurationError(
            f"Signature hash '{hash_name}' is not allowed. Use one of: {allowed}."
        )
    if profile.rsa_bits < profile.min_rsa_bits:
        raise ProvisionConfigurationError(
            f"RSA key size {profile.rsa_bits} is below the {profile.min_rsa_bits}-bit minimum."
        )
    return ceiling


def generate_identity(
    name: str,
    subject: DistinguishedName,
    *,
    validity_days: int,
    dns_names: Iterable[str] = (),
    ip_addresses: Iterable[str] = (),
    consumers: Iterable[str] = (),
    signature_hash: str | None = None,
    profile: IdentityKeyProfile = DEFAULT_KEY_PROFILE,
) -> PartyIdentity:
    """
    Generate a fresh RSA key pair and a self-signed certificate for one party.

    The request is validated before any key material exists; a rejected
    request raises ProvisionConfigurationError. Failures while generating or
    signing raise IdentityGenerationError.
    """
    consumers = tuple(consumers)
    dns_names = tuple(dns_names)
    ip_addresses = tuple(ip_addresses)
    validate_generation_request(
        subject=subject,
        validity_days=validity_days,
        dns_names=dns_names,
        ip_addresses=ip_addresses,
        consumers=consumers,
        signature_hash=signature_hash,
        profile=profile,
    )
    hash_name = (signature_hash or profile.signature_hash).strip().lower()
    dns_list, ip_list = validate_subject_alt_names(dns_names, ip_addresses)
    if not dns_list and not ip_list:
        # Common name doubles as the only SAN entry when it is a host name.
        try:
            dns_list = [validate_dns_name(subject.common_name)]
        except ValueError:
            dns_list = []

    try:
        subject_name = subject.to_asn1()
        _logger.info(
            "Generating RSA-%d identity for party=%s cn=%s",
            profile.rsa_bits,
            name,
            subject.common_name,
        )
        private_key = rsa.generate_private_key(
            public_exponent=profile.public_exponent,
            key_size=profile.rsa_bits,
        )
        hash_algorithm = _HASHES[hash_name]()

        def sign_tbs(tbs: bytes) -> bytes:
            return private_key.sign(tbs, padding.PKCS1v15(), hash_algorithm)

        certificate = create_self_signed_certificate(
            subject=subject_name,
            subject_public_key_info=public_key_info_from_der(public_key_der(private_key)),
            sign_tbs=sign_tbs,
            signature_hash=hash_name,
            validity_days=validity_days,
            dns_names=dns_list,
            ip_addresses=ip_list,
        )
    except Exception as exc:
        _logger.exception("Identity generation failed for party=%s", name)
        raise IdentityGenerationError(
            f"Failed to generate identity for '{name}': {format_exception(exc)}"
        ) from exc

    _logger.info(
        "Generated identity party=%s serial=%x validity_days=%d",
        name,
        certificate.serial_number,
        validity_days,
    )
    return PartyIdentity(name=name, private_key=private_key, certificate=certificate)


def write_identity(
    identity: PartyIdentity,
    directory: str | Path,
    *,
    key_filename: str = KEY_FILENAME,
    cert_filename: str = CERT_FILENAME,
) -> PartyIdentity:
    """
    Write the private key and certificate to separate files in directory.

    Both files are staged first and replaced as a group. If any step fails,
    the previous key and certificate are restored, so a failed write never
    leaves a new key beside an old certificate.
    """
    target_dir = Path(directory)
    key_path = target_dir / key_filename
    cert_path = target_dir / cert_filename
    if key_path == cert_path:
        raise IdentityGenerationError("Private key and certificate must use distinct files.")

    try:
        atomic_write_group(
            {
                key_path: (identity.private_key_pem, PRIVATE_FILE_MODE),
                cert_path: (identity.certificate_pem, PUBLIC_FILE_MODE),
            }
        )
    except OSError as exc:
        _logger.exception("Failed to write identity for party=%s", identity.name)
        raise IdentityGenerationError(
            f"Failed to write identity for '{identity.name}' to {target_dir}: "
            f"{format_exception(exc)}"
        ) from exc

    _logger.info(
        "Wrote identity party=%s key=%s cert=%s", identity.name, key_path, cert_path
    )
    return PartyIdentity(
        name=identity.name,
        private_key=identity.private_key,
        certificate=identity.certificate,
        key_path=key_path,
        cert_path=cert_path,
    )


def load_private_key(path: str | Path) -> rsa.RSAPrivateKey:
    raw = Path(path).read_bytes()
    key = serialization.load_pem_private_key(raw, password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise TypeError("private key is not an RSA private key")
    return key


def load_identity(
    key_path: str | Path,
    cert_path: str | Path,
    *,
    name: str | None = None,
) -> PartyIdentity:
    try:
        private_key = load_private_key(key_path)
        certificate = load_certificate(Path(cert_path).read_bytes())
    except (OSError, TypeError, ValueError) as exc:
        raise IdentityGenerationError(
            f"Failed to load identity from {key_path} and {cert_path}: "
            f"{format_exception(exc)}"
        ) from exc
    if not key_matches_certificate(private_key, certificate):
        raise IdentityGenerationError(
            f"Private key {key_path} does not match certificate {cert_path}."
        )
    return PartyIdentity(
        name=name or certificate_common_name(certificate) or Path(cert_path).stem,
        private_key=private_key,
        certificate=certificate,
        key_path=Path(key_path),
        cert_path=Path(cert_path),
    )
