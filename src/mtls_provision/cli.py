from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Sequence

from .allowlist import FingerprintFormat, certificate_fingerprint, export_fingerprint
from .config import ProvisionConfig
from .exceptions import ProvisionError
from .logging_utils import configure_logging
from .profiles import CONSUMER_PROFILES, list_consumer_profiles
from .provisioner import Provisioner
from .x509_ops import load_certificate

_logger = logging.getLogger("mtls_provision.cli")


class _HelpFormatter(
    argparse.RawTextHelpFormatter,
    argparse.ArgumentDefaultsHelpFormatter,
):
    """Keep multiline examples readable and include defaults."""


CLI_HELP_EPILOG = """Environment:
  MTLS_PROVISION_CONFIG                 JSON profile describing server and client
  MTLS_PROVISION_OUTPUT_DIR             output directory override
  MTLS_PROVISION_VALIDITY_DAYS          validity for both certificates (max 825)
  MTLS_PROVISION_FINGERPRINT_FORMAT     hex | openssl
  MTLS_PROVISION_ALLOW_SHARED_PASSWORD  true to allow one password for both bundles
  MTLS_PROVISION_LOG_FILE / MTLS_PROVISION_LOG_LEVEL

Examples:
  # Generate both identities, bundles, trust store copy and allowlist
  mtls-provision run --config tls-profile.json

  # Check existing artifacts for stale bundles or allowlist entries
  mtls-provision verify --config tls-profile.json

  # Add or refresh one allowlist line by hand
  mtls-provision fingerprint client/cert.pem --label client --allowlist signer/known_clients.txt
"""


def _read_binary_file(path: str) -> bytes:
    source = Path(path)
    if not source.exists():
        raise ValueError(f"File does not exist: {source}")
    if not source.is_file():
        raise ValueError(f"Path is not a file: {source}")
    return source.read_bytes()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mtls-provision",
        description=(
            "Provision self-signed mutual-TLS identities, PKCS#12 bundles and the "
            "client fingerprint allowlist for a signing service and its client."
        ),
        formatter_class=_HelpFormatter,
        epilog=CLI_HELP_EPILOG,
    )
    parser.add_argument("--log-file", default=None, help="Rotating log file path.")
    parser.add_argument("--log-level", default=None, help="Log level, e.g. INFO or DEBUG.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("run", "Run every provisioning step for server and client."),
        ("verify", "Check existing artifacts against each other."),
    ):
        sub = subparsers.add_parser(name, help=help_text, formatter_class=_HelpFormatter)
        sub.add_argument(
            "--config",
            default=None,
            help="JSON profile (default: MTLS_PROVISION_CONFIG or built-in parties).",
        )
        sub.add_argument("--output-dir", default=None, help="Output directory override.")
        if name == "run":
            sub.add_argument(
                "--clean",
                action="store_true",
                help="Remove existing keys, certificates and bundles before generating.",
            )

    fingerprint = subparsers.add_parser(
        "fingerprint",
        help="Print a certificate fingerprint, optionally writing it to an allowlist.",
        formatter_class=_HelpFormatter,
    )
    fingerprint.add_argument("certificate", help="PEM or DER certificate file.")
    fingerprint.add_argument(
        "--format",
        choices=[f.value for f in FingerprintFormat],
        default=FingerprintFormat.HEX.value,
        help="Fingerprint spelling.",
    )
    fingerprint.add_argument("--label", default=None, help="Allowlist label.")
    fingerprint.add_argument(
        "--allowlist",
        default=None,
        help="Allowlist file to update (requires --label).",
    )

    subparsers.add_parser(
        "consumers",
        help="List the consumer capability table.",
        formatter_class=_HelpFormatter,
    )
    return parser


def _load_config(args: argparse.Namespace) -> ProvisionConfig:
    if args.config:
        config = ProvisionConfig.from_file(args.config)
    else:
        config = ProvisionConfig.from_env()
    if args.output_dir:
        config = replace(config, output_dir=Path(args.output_dir))
    return config


def _cmd_run(args: argparse.Namespace) -> int:
    report = Provisioner(_load_config(args)).run(clean=args.clean)
    for step in report.steps:
        for artifact in step.artifacts:
            print(f"{step.party:<12} {step.step:<20} {artifact}")
    if report.allowlist_record is not None:
        print(f"allowlist: {report.allowlist_record.to_line()}")
    return 0


def _cmd_verify(args: argparse.Namespace) -> int:
    issues = Provisioner(_load_config(args)).verify()
    if not issues:
        print("All artifacts are consistent.")
        return 0
    for issue in issues:
        print(issue)
    return 1


def _cmd_fingerprint(args: argparse.Namespace) -> int:
    if args.allowlist and not args.label:
        raise ValueError("--allowlist requires --label.")
    certificate = load_certificate(_read_binary_file(args.certificate))
    if args.allowlist:
        record = export_fingerprint(
            certificate, args.label, args.allowlist, fmt=args.format
        )
        print(f"Wrote allowlist entry to: {args.allowlist}")
        print(record.to_line())
        return 0
    fingerprint = certificate_fingerprint(certificate, args.format)
    print(f"{args.label} {fingerprint}" if args.label else fingerprint)
    return 0


def _cmd_consumers(_args: argparse.Namespace) -> int:
    for name in list_consumer_profiles():
        profile = CONSUMER_PROFILES[name]
        parses = "modern+legacy" if profile.parses_modern_pkcs12 else "legacy only"
        ceiling = (
            f"{profile.max_validity_days}d" if profile.max_validity_days is not None else "-"
        )
        print(f"{name:<26} {parses:<14} {ceiling:<6} {profile.notes}")
    return 0


_COMMANDS = {
    "run": _cmd_run,
    "verify": _cmd_verify,
    "fingerprint": _cmd_fingerprint,
    "consumers": _cmd_consumers,
}


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        configure_logging(log_file=args.log_file, level=args.log_level)
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    try:
        return _COMMANDS[args.command](args)
    except ProvisionError as exc:
        _logger.error("Command %s failed: %s", args.command, exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
