from __future__ import annotations

import json
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from mtls_provision import DistinguishedName, PartyIdentity, ProvisionConfig, generate_identity
from mtls_provision import identity as identity_module


@pytest.fixture(scope="session")
def server_identity() -> PartyIdentity:
    return generate_identity(
        "signer",
        DistinguishedName(common_name="signer.local"),
        validity_days=825,
        dns_names=["signer.local", "localhost"],
        ip_addresses=["127.0.0.1"],
        consumers=["java-keystore", "apple-security-framework"],
    )


@pytest.fixture(scope="session")
def client_identity() -> PartyIdentity:
    return generate_identity(
        "client",
        DistinguishedName(common_name="client.local", organization="Example"),
        validity_days=365,
    )


@pytest.fixture
def fast_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    """Generate 2048-bit keys so multi-party runs stay quick."""
    original = rsa.generate_private_key

    def _generate(public_exponent: int, key_size: int, backend: object = None) -> rsa.RSAPrivateKey:
        return original(public_exponent=public_exponent, key_size=2048)

    monkeypatch.setattr(identity_module.rsa, "generate_private_key", _generate)


def write_password(path: Path, value: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(value, encoding="utf-8")
    return path


@pytest.fixture
def provision_config(tmp_path: Path) -> ProvisionConfig:
    output_dir = tmp_path / "tls"
    write_password(output_dir / "signer" / "password.txt", "signer-secret\n")
    write_password(output_dir / "client" / "password.txt", "client-secret\n")
    profile = {
        "output_dir": "tls",
        "server": {
            "name": "signer",
            "subject": {"common_name": "signer.local"},
            "dns_names": ["signer.local", "localhost"],
            "ip_addresses": ["127.0.0.1"],
            "bundle_consumers": ["java-keystore"],
            "certificate_consumers": ["openssl3", "apple-security-framework"],
        },
        "client": {
            "name": "client",
            "subject": {"common_name": "client.local"},
            "bundle_consumers": ["openssl3", "apple-security-framework"],
            "certificate_consumers": ["java-keystore"],
            "allowlist_label": "lighthouse",
        },
    }
    config_path = tmp_path / "profile.json"
    config_path.write_text(json.dumps(profile), encoding="utf-8")
    return ProvisionConfig.from_file(config_path)
