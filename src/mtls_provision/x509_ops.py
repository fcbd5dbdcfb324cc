from __future__ import annotations

import hashlib
import ipaddress
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from asn1crypto import algos, keys, pem, x509
from cryptography import x509 as crypto_x509


@dataclass(frozen=True)
class DistinguishedName:
    """
    Distinguished Name values used as both subject and issuer of a
    self-signed party certificate.
    """

    common_name: str
    organization: str | None = None
    organizational_unit: str | None = None
    country: str | None = None
    state_or_province: str | None = None
    locality: str | None = None

    def validate(self) -> None:
        if not self.common_name.strip():
            raise ValueError("common_name is required for DistinguishedName.")
        if self.country is not None and len(self.country.strip()) != 2:
            raise ValueError("country must be a 2-letter ISO country code.")

    def to_asn1(self) -> x509.Name:
        self.validate()
        fields: dict[str, str] = {"common_name": self.common_name.strip()}
        if self.organization:
            fields["organization_name"] = self.organization.strip()
        if self.organizational_unit:
            fields["organizational_unit_name"] = self.organizational_unit.strip()
        if self.country:
            fields["country_name"] = self.country.strip().upper()
        if self.state_or_province:
            fields["state_or_province_name"] = self.state_or_province.strip()
        if self.locality:
            fields["locality_name"] = self.locality.strip()
        return x509.Name.build(fields)

    @classmethod
    def from_dict(cls, payload: dict[str, str]) -> "DistinguishedName":
        if "common_name" not in payload:
            raise ValueError("subject is missing common_name.")
        return cls(
            common_name=str(payload["common_name"]),
            organization=payload.get("organization"),
            organizational_unit=payload.get("organizational_unit"),
            country=payload.get("country"),
            state_or_province=payload.get("state_or_province"),
            locality=payload.get("locality"),
        )


_SIGNATURE_ALGORITHMS: dict[str, str] = {
    "sha256": "sha256_rsa",
    "sha384": "sha384_rsa",
    "sha512": "sha512_rsa",
}


def _normalize_hash_name(hash_name: str) -> str:
    return hash_name.strip().lower().replace("-", "").replace("_", "")


def signature_algorithm_identifier(hash_name: str) -> algos.SignedDigestAlgorithm:
    normalized = _normalize_hash_name(hash_name)
    algorithm = _SIGNATURE_ALGORITHMS.get(normalized)
    if algorithm is None:
        available = ", ".join(sorted(_SIGNATURE_ALGORITHMS.keys()))
        raise ValueError(
            f"Unsupported certificate signature hash '{hash_name}'. Use one of: {available}."
        )
    return algos.SignedDigestAlgorithm({"algorithm": algorithm})


def _load_pem_or_der(
    data: bytes | str,
    expected_pem_type: str,
) -> bytes:
    if isinstance(data, str):
        payload = data.encode("utf-8")
    else:
        payload = data

    if pem.detect(payload):
        pem_type, _headers, der_bytes = pem.unarmor(payload)
        if pem_type != expected_pem_type:
            raise ValueError(
                f"Expected PEM type '{expected_pem_type}', received '{pem_type}'."
            )
        return der_bytes
    return payload


def load_certificate(data: bytes | str) -> x509.Certificate:
    """
    Load a PEM or DER certificate. asn1crypto parses lazily, so the structure
    is walked here to reject other DER SEQUENCEs such as PKCS#8 keys.
    """
    certificate = x509.Certificate.load(_load_pem_or_der(data, "CERTIFICATE"))
    try:
        certificate.native
    except (ValueError, TypeError, KeyError) as exc:
        raise ValueError(f"Data is not a valid X.509 certificate: {exc}") from exc
    return certificate


def dump_certificate_pem(certificate: x509.Certificate) -> bytes:
    return pem.armor("CERTIFICATE", certificate.dump())


def to_cryptography_certificate(certificate: x509.Certificate) -> crypto_x509.Certificate:
    return crypto_x509.load_der_x509_certificate(certificate.dump())


def public_key_info_from_der(der: bytes) -> keys.PublicKeyInfo:
    return keys.PublicKeyInfo.load(der)


def generate_serial_number() -> int:
    # Positive 159-bit serial to satisfy common X.509 constraints.
    return int.from_bytes(os.urandom(20), byteorder="big") >> 1


def sha256_fingerprint(certificate: x509.Certificate) -> bytes:
    return hashlib.sha256(certificate.dump()).digest()


def certificate_validity(certificate: x509.Certificate) -> tuple[datetime, datetime]:
    validity = certificate["tbs_certificate"]["validity"]
    return validity["not_before"].native, validity["not_after"].native


def certificate_validity_days(certificate: x509.Certificate) -> float:
    not_before, not_after = certificate_validity(certificate)
    return (not_after - not_before).total_seconds() / 86400


def certificate_common_name(certificate: x509.Certificate) -> str | None:
    value = certificate.subject.native.get("common_name")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _asn1_time(value: datetime) -> x509.Time:
    # RFC 5280: UTCTime through 2049, GeneralizedTime afterwards.
    if value.year >= 2050:
        return x509.Time({"general_time": value})
    return x509.Time({"utc_time": value})


def validate_dns_name(name: str) -> str:
    """Return the stripped name, or raise ValueError if it cannot be a SAN dNSName."""
    if not isinstance(name, str) or not name.strip():
        raise ValueError(f"DNS name must be a non-empty string, got: {name!r}")
    stripped = name.strip()
    if any(ch.isspace() for ch in stripped):
        raise ValueError(f"DNS name must not contain whitespace: {name!r}")
    # asn1crypto encodes dNSName values with the same codec.
    try:
        encoded = stripped.encode("idna")
    except UnicodeError as exc:
        raise ValueError(f"DNS name {name!r} is not IDNA-encodable: {exc}") from exc
    if len(encoded.rstrip(b".")) > 253:
        raise ValueError(f"DNS name is longer than 253 characters: {name!r}")
    return stripped


def validate_ip_address(address: str) -> str:
    """Return the canonical form of address, or raise ValueError."""
    if not isinstance(address, str) or not address.strip():
        raise ValueError(f"IP address must be a non-empty string, got: {address!r}")
    return str(ipaddress.ip_address(address.strip()))


def validate_subject_alt_names(
    dns_names: Iterable[str],
    ip_addresses: Iterable[str],
) -> tuple[list[str], list[str]]:
    return (
        [validate_dns_name(name) for name in dns_names],
        [validate_ip_address(address) for address in ip_addresses],
    )


def _build_san_extension(
    dns_names: Iterable[str],
    ip_addresses: Iterable[str],
) -> x509.Extension | None:
    general_names: list[x509.GeneralName] = []
    for name in dns_names:
        if name and name.strip():
            general_names.append(x509.GeneralName(name="dns_name", value=name.strip()))
    for address in ip_addresses:
        if address and address.strip():
            normalized = str(ipaddress.ip_address(address.strip()))
            general_names.append(x509.GeneralName(name="ip_address", value=normalized))
    if not general_names:
        return None
    return x509.Extension(
        {
            "extn_id": "subject_alt_name",
            "critical": False,
            "extn_value": x509.GeneralNames(general_names),
        }
    )


def build_self_signed_extensions(
    *,
    subject_public_key_info: keys.PublicKeyInfo,
    dns_names: Iterable[str] = (),
    ip_addresses: Iterable[str] = (),
) -> x509.Extensions:
    """
    Extensions for a party certificate that is used both as the TLS identity
    of its owner and as the trust anchor configured by the counterpart.
    """
    extensions: list[x509.Extension] = [
        x509.Extension(
            {
                "extn_id": "basic_constraints",
                "critical": True,
                "extn_value": x509.BasicConstraints({"ca": False}),
            }
        ),
        x509.Extension(
            {
                "extn_id": "key_usage",
                "critical": True,
                "extn_value": x509.KeyUsage({"digital_signature", "key_encipherment"}),
            }
        ),
        x509.Extension(
            {
                "extn_id": "extended_key_usage",
                "critical": False,
                "extn_value": x509.ExtKeyUsageSyntax(["server_auth", "client_auth"]),
            }
        ),
        x509.Extension(
            {
                "extn_id": "key_identifier",
                "critical": False,
                "extn_value": subject_public_key_info.sha1,
            }
        ),
    ]
    san_ext = _build_san_extension(dns_names, ip_addresses)
    if san_ext is not None:
        extensions.append(san_ext)
    return x509.Extensions(extensions)


def create_self_signed_certificate(
    *,
    subject: x509.Name,
    subject_public_key_info: keys.PublicKeyInfo,
    sign_tbs: Callable[[bytes], bytes],
    signature_hash: str,
    validity_days: int,
    dns_names: Iterable[str] = (),
    ip_addresses: Iterable[str] = (),
    serial_number: int | None = None,
    not_before: datetime | None = None,
) -> x509.Certificate:
    if validity_days <= 0:
        raise ValueError("validity_days must be > 0.")
    resolved_serial = serial_number or generate_serial_number()

    # X.509 times carry whole seconds; truncate so notAfter - notBefore is exact.
    start = (not_before or datetime.now(timezone.utc) - timedelta(minutes=5)).replace(
        microsecond=0
    )
    end = start + timedelta(days=validity_days)
    signature_id = signature_algorithm_identifier(signature_hash)
    extensions = build_self_signed_extensions(
        subject_public_key_info=subject_public_key_info,
        dns_names=dns_names,
        ip_addresses=ip_addresses,
    )

    tbs_certificate = x509.TbsCertificate(
        {
            "version": "v3",
            "serial_number": resolved_serial,
            "signature": signature_id,
            "issuer": subject,
            "validity": x509.Validity(
                {
                    "not_before": _asn1_time(start),
                    "not_after": _asn1_time(end),
                }
            ),
            "subject": subject,
            "subject_public_key_info": subject_public_key_info,
            "extensions": extensions,
        }
    )

    signature = sign_tbs(tbs_certificate.dump())
    return x509.Certificate(
        {
            "tbs_certificate": tbs_certificate,
            "signature_algorithm": signature_id,
            "signature_value": signature,
        }
    )
