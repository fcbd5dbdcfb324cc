from __future__ import annotations

import os
import stat
from datetime import timedelta
from pathlib import Path

import pytest
from cryptography import x509 as crypto_x509
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID

from mtls_provision import (
    ConsumerProfile,
    DistinguishedName,
    IdentityGenerationError,
    PartyIdentity,
    ProvisionConfigurationError,
    generate_identity,
    load_identity,
    write_identity,
)
from mtls_provision import files as files_module
from mtls_provision import identity as identity_module
from mtls_provision import profiles
from mtls_provision.x509_ops import certificate_validity, to_cryptography_certificate


def _refuse_key_generation(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fail(*_args: object, **_kwargs: object) -> rsa.RSAPrivateKey:
        raise AssertionError("key generation must not be reached")

    monkeypatch.setattr(identity_module.rsa, "generate_private_key", _fail)


def test_signer_certificate_is_valid_for_exactly_825_days(
    server_identity: PartyIdentity,
) -> None:
    not_before, not_after = certificate_validity(server_identity.certificate)
    assert not_after - not_before == timedelta(days=825)
    assert server_identity.certificate.subject.native["common_name"] == "signer.local"


def test_certificate_is_self_signed_with_sha256(server_identity: PartyIdentity) -> None:
    certificate = to_cryptography_certificate(server_identity.certificate)
    certificate.verify_directly_issued_by(certificate)
    assert certificate.issuer == certificate.subject
    assert certificate.signature_hash_algorithm is not None
    assert certificate.signature_hash_algorithm.name == "sha256"


def test_key_is_rsa_4096(server_identity: PartyIdentity) -> None:
    assert isinstance(server_identity.private_key, rsa.RSAPrivateKey)
    assert server_identity.private_key.key_size == 4096
    assert server_identity.private_key.public_key().public_numbers().e == 65537


def test_certificate_extensions_cover_both_tls_roles(server_identity: PartyIdentity) -> None:
    certificate = to_cryptography_certificate(server_identity.certificate)
    san = certificate.extensions.get_extension_for_class(crypto_x509.SubjectAlternativeName)
    assert san.value.get_values_for_type(crypto_x509.DNSName) == ["signer.local", "localhost"]
    assert [str(ip) for ip in san.value.get_values_for_type(crypto_x509.IPAddress)] == [
        "127.0.0.1"
    ]
    eku = certificate.extensions.get_extension_for_class(crypto_x509.ExtendedKeyUsage)
    assert ExtendedKeyUsageOID.SERVER_AUTH in eku.value
    assert ExtendedKeyUsageOID.CLIENT_AUTH in eku.value
    constraints = certificate.extensions.get_extension_for_class(crypto_x509.BasicConstraints)
    assert constraints.value.ca is False


def test_common_name_is_used_as_dns_name_by_default(client_identity: PartyIdentity) -> None:
    certificate = to_cryptography_certificate(client_identity.certificate)
    san = certificate.extensions.get_extension_for_class(crypto_x509.SubjectAlternativeName)
    assert san.value.get_values_for_type(crypto_x509.DNSName) == ["client.local"]


def test_900_day_validity_is_rejected_before_key_generation(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _refuse_key_generation(monkeypatch)
    with pytest.raises(ProvisionConfigurationError, match="825-day ceiling"):
        generate_identity(
            "signer",
            DistinguishedName(common_name="signer.local"),
            validity_days=900,
        )


def test_consumer_ceiling_below_825_is_enforced(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(
        profiles.CONSUMER_PROFILES,
        "short-lived",
        ConsumerProfile(name="short-lived", parses_modern_pkcs12=True, max_validity_days=90),
    )
    _refuse_key_generation(monkeypatch)
    with pytest.raises(ProvisionConfigurationError, match="90-day ceiling"):
        generate_identity(
            "signer",
            DistinguishedName(common_name="signer.local"),
            validity_days=120,
            consumers=["short-lived"],
        )


@pytest.mark.parametrize("hash_name", ["sha1", "md5", "sha224"])
def test_weak_signature_hashes_are_rejected(
    monkeypatch: pytest.MonkeyPatch, hash_name: str
) -> None:
    _refuse_key_generation(monkeypatch)
    with pytest.raises(ProvisionConfigurationError, match="not allowed"):
        generate_identity(
            "signer",
            DistinguishedName(common_name="signer.local"),
            validity_days=30,
            signature_hash=hash_name,
        )


def test_malformed_subject_is_a_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    _refuse_key_generation(monkeypatch)
    with pytest.raises(ProvisionConfigurationError, match="country"):
        generate_identity(
            "signer",
            DistinguishedName(common_name="signer.local", country="USA"),
            validity_days=30,
        )
    with pytest.raises(ProvisionConfigurationError, match="common_name"):
        generate_identity("signer", DistinguishedName(common_name="  "), validity_days=30)


def test_signing_failure_raises_generation_error(
    monkeypatch: pytest.MonkeyPatch, fast_keys: None
) -> None:
    def _broken(**_kwargs: object) -> None:
        raise RuntimeError("signer unavailable")

    monkeypatch.setattr(identity_module, "create_self_signed_certificate", _broken)
    with pytest.raises(IdentityGenerationError, match="signer unavailable"):
        generate_identity("signer", DistinguishedName(common_name="signer.local"), validity_days=30)


def test_write_identity_keeps_key_and_certificate_apart(
    tmp_path: Path, server_identity: PartyIdentity
) -> None:
    written = write_identity(server_identity, tmp_path / "signer")

    assert written.key_path == tmp_path / "signer" / "key.key"
    assert written.cert_path == tmp_path / "signer" / "cert.pem"
    key_text = written.key_path.read_text(encoding="ascii")
    cert_text = written.cert_path.read_text(encoding="ascii")
    assert "PRIVATE KEY" in key_text and "CERTIFICATE" not in key_text
    assert "CERTIFICATE" in cert_text and "PRIVATE KEY" not in cert_text
    assert stat.S_IMODE(written.key_path.stat().st_mode) == 0o600

    loaded = load_identity(written.key_path, written.cert_path, name="signer")
    assert loaded.certificate.dump() == server_identity.certificate.dump()
    assert loaded.private_key_pem == server_identity.private_key_pem


def test_failed_write_leaves_no_files(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, server_identity: PartyIdentity
) -> None:
    def _replace(_src: object, _dst: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(files_module.os, "replace", _replace)
    target = tmp_path / "signer"
    with pytest.raises(IdentityGenerationError, match="disk full"):
        write_identity(server_identity, target)
    assert list(target.iterdir()) == []


def test_load_identity_rejects_mismatched_pair(
    tmp_path: Path, server_identity: PartyIdentity, client_identity: PartyIdentity
) -> None:
    server = write_identity(server_identity, tmp_path / "signer")
    client = write_identity(client_identity, tmp_path / "client")
    assert server.key_path is not None and client.cert_path is not None
    with pytest.raises(IdentityGenerationError, match="does not match"):
        load_identity(server.key_path, client.cert_path)


def test_partial_replace_failure_restores_previous_identity(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    server_identity: PartyIdentity,
    client_identity: PartyIdentity,
) -> None:
    target = tmp_path / "signer"
    previous = write_identity(server_identity, target)
    assert previous.key_path is not None and previous.cert_path is not None
    real_replace = os.replace
    calls = []

    def _fail_second(src: object, dst: object) -> None:
        calls.append(dst)
        if len(calls) == 2:
            raise OSError("disk full")
        real_replace(src, dst)

    monkeypatch.setattr(files_module.os, "replace", _fail_second)
    with pytest.raises(IdentityGenerationError, match="disk full"):
        write_identity(client_identity, target)
    monkeypatch.undo()

    assert sorted(p.name for p in target.iterdir()) == ["cert.pem", "key.key"]
    assert previous.key_path.read_bytes() == server_identity.private_key_pem
    assert previous.cert_path.read_bytes() == server_identity.certificate_pem
    load_identity(previous.key_path, previous.cert_path)


def test_partial_replace_failure_without_previous_files_leaves_nothing(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, server_identity: PartyIdentity
) -> None:
    real_replace = os.replace
    calls = []

    def _fail_second(src: object, dst: object) -> None:
        calls.append(dst)
        if len(calls) == 2:
            raise OSError("disk full")
        real_replace(src, dst)

    monkeypatch.setattr(files_module.os, "replace", _fail_second)
    target = tmp_path / "signer"
    with pytest.raises(IdentityGenerationError):
        write_identity(server_identity, target)
    assert list(target.iterdir()) == []


@pytest.mark.parametrize("address", ["not-an-ip", "999.1.1.1", "", "10.0.0.1/24"])
def test_malformed_ip_address_rejected_before_key_generation(
    monkeypatch: pytest.MonkeyPatch, address: str
) -> None:
    _refuse_key_generation(monkeypatch)
    with pytest.raises(ProvisionConfigurationError, match="subject alternative name"):
        generate_identity(
            "signer",
            DistinguishedName(common_name="signer.local"),
            validity_days=30,
            ip_addresses=[address],
        )


@pytest.mark.parametrize(
    "dns_name", ["", "   ", "signer local", "a..b", "x" * 64 + ".example"]
)
def test_malformed_dns_name_rejected_before_key_generation(
    monkeypatch: pytest.MonkeyPatch, dns_name: str
) -> None:
    _refuse_key_generation(monkeypatch)
    with pytest.raises(ProvisionConfigurationError, match="subject alternative name"):
        generate_identity(
            "signer",
            DistinguishedName(common_name="signer.local"),
            validity_days=30,
            dns_names=["signer.local", dns_name],
        )


def test_common_name_that_is_not_a_host_name_gets_no_san(fast_keys: None) -> None:
    identity = generate_identity(
        "client", DistinguishedName(common_name="Example Client"), validity_days=30
    )
    certificate = to_cryptography_certificate(identity.certificate)
    with pytest.raises(crypto_x509.ExtensionNotFound):
        certificate.extensions.get_extension_for_class(crypto_x509.SubjectAlternativeName)
