from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

# Apple platforms reject TLS server certificates valid for more than 825 days.
MAX_VALIDITY_DAYS = 825


@dataclass(frozen=True)
class IdentityKeyProfile:
    """
    Key and signature parameters used for every generated party identity.
    """

    name: str
    rsa_bits: int = 4096
    public_exponent: int = 65537
    signature_hash: str = "sha256"
    allowed_signature_hashes: tuple[str, ...] = ("sha256", "sha384", "sha512")
    min_rsa_bits: int = 4096


@dataclass(frozen=True)
class ConsumerProfile:
    """
    Capabilities of a TLS stack that loads a bundle or validates a certificate.

    parses_modern_pkcs12 is False for stacks whose PKCS#12 parser only
    understands the PBE-SHA1-3DES / HMAC-SHA1 suite.
    """

    name: str
    parses_modern_pkcs12: bool
    max_validity_days: int | None = None
    notes: str = ""


DEFAULT_KEY_PROFILE = IdentityKeyProfile(name="rsa4096_sha256")

CONSUMER_PROFILES: dict[str, ConsumerProfile] = {
    "openssl3": ConsumerProfile(
        name="openssl3",
        parses_modern_pkcs12=True,
        notes="OpenSSL 3 default provider; writes PBES2/AES-256 bundles by default.",
    ),
    "java-keystore": ConsumerProfile(
        name="java-keystore",
        parses_modern_pkcs12=True,
        notes="JDK PKCS12 KeyStore ships its own parser and reads PBES2 bundles.",
    ),
    "rustls": ConsumerProfile(
        name="rustls",
        parses_modern_pkcs12=True,
        notes="Loaded through PEM key and certificate files, not PKCS#12.",
    ),
    "apple-security-framework": ConsumerProfile(
        name="apple-security-framework",
        parses_modern_pkcs12=False,
        max_validity_days=MAX_VALIDITY_DAYS,
        notes=(
            "SecPKCS12Import cannot parse PBES2 bundles; server certificates "
            "valid for more than 825 days are rejected."
        ),
    ),
    "windows-schannel": ConsumerProfile(
        name="windows-schannel",
        parses_modern_pkcs12=False,
        notes="Older Windows builds only import 3DES/SHA1 protected PFX files.",
    ),
}


def list_consumer_profiles() -> tuple[str, ...]:
    return tuple(sorted(CONSUMER_PROFILES.keys()))


def get_consumer_profile(name: str) -> ConsumerProfile:
    try:
        return CONSUMER_PROFILES[name]
    except KeyError as exc:
        available = ", ".join(list_consumer_profiles())
        raise ValueError(
            f"Unknown consumer profile '{name}'. Available profiles: {available}"
        ) from exc


def validity_ceiling_days(consumers: Iterable[str]) -> int:
    ceiling = MAX_VALIDITY_DAYS
    for name in consumers:
        limit = get_consumer_profile(name).max_validity_days
        if limit is not None:
            ceiling = min(ceiling, limit)
    return ceiling


def requires_legacy_bundle(consumers: Iterable[str]) -> bool:
    return any(not get_consumer_profile(name).parses_modern_pkcs12 for name in consumers)
