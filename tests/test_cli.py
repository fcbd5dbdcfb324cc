from __future__ import annotations

from pathlib import Path

import pytest
from cryptography.hazmat.primitives import serialization

from mtls_provision import PartyIdentity, ProvisionConfig, certificate_fingerprint
from mtls_provision.cli import main


@pytest.fixture(autouse=True)
def _log_to_tmp(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MTLS_PROVISION_LOG_FILE", str(tmp_path / "logs" / "cli.log"))
    monkeypatch.delenv("MTLS_PROVISION_CONFIG", raising=False)


def test_consumers_lists_capability_table(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["consumers"]) == 0
    output = capsys.readouterr().out
    assert "apple-security-framework" in output
    assert "legacy only" in output
    assert "825d" in output


def test_fingerprint_prints_label_and_hex(
    tmp_path: Path,
    client_identity: PartyIdentity,
    capsys: pytest.CaptureFixture[str],
) -> None:
    cert_path = tmp_path / "cert.pem"
    cert_path.write_bytes(client_identity.certificate_pem)

    assert main(["fingerprint", str(cert_path), "--label", "lighthouse"]) == 0
    expected = certificate_fingerprint(client_identity.certificate)
    assert capsys.readouterr().out.strip() == f"lighthouse {expected}"


def test_fingerprint_updates_allowlist(
    tmp_path: Path, client_identity: PartyIdentity
) -> None:
    cert_path = tmp_path / "cert.pem"
    cert_path.write_bytes(client_identity.certificate_pem)
    allowlist = tmp_path / "known_clients.txt"

    for _ in range(2):
        assert (
            main(
                [
                    "fingerprint",
                    str(cert_path),
                    "--label",
                    "lighthouse",
                    "--allowlist",
                    str(allowlist),
                    "--format",
                    "openssl",
                ]
            )
            == 0
        )
    lines = allowlist.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    assert lines[0] == "lighthouse " + certificate_fingerprint(
        client_identity.certificate, "openssl"
    )


def test_fingerprint_allowlist_requires_label(tmp_path: Path) -> None:
    assert main(["fingerprint", str(tmp_path / "cert.pem"), "--allowlist", "x.txt"]) == 2


@pytest.mark.integration
def test_run_then_verify(
    provision_config: ProvisionConfig,
    tmp_path: Path,
    fast_keys: None,
    capsys: pytest.CaptureFixture[str],
) -> None:
    profile = tmp_path / "profile.json"
    assert main(["run", "--config", str(profile)]) == 0
    assert "allowlist: lighthouse " in capsys.readouterr().out

    assert main(["verify", "--config", str(profile)]) == 0
    assert "consistent" in capsys.readouterr().out


def test_run_reports_configuration_errors(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    profile = tmp_path / "profile.json"
    profile.write_text(
        '{"output_dir": "out", "server": {"name": "signer", "validity_days": 900}}',
        encoding="utf-8",
    )
    assert main(["run", "--config", str(profile)]) == 1
    assert "preflight failed" in capsys.readouterr().err
    assert not (tmp_path / "out" / "signer" / "key.key").exists()


def test_fingerprint_rejects_a_key_passed_as_certificate(
    tmp_path: Path,
    client_identity: PartyIdentity,
    capsys: pytest.CaptureFixture[str],
) -> None:
    key_path = tmp_path / "key.der"
    key_path.write_bytes(
        client_identity.private_key.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    allowlist = tmp_path / "known_clients.txt"

    code = main(
        ["fingerprint", str(key_path), "--label", "lighthouse", "--allowlist", str(allowlist)]
    )
    assert code == 2
    assert "not a valid X.509 certificate" in capsys.readouterr().err
    assert not allowlist.exists()
