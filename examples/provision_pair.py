from __future__ import annotations

import argparse
import json
import secrets
import sys
from pathlib import Path

if __package__ in (None, ""):
    repo_src = Path(__file__).resolve().parents[1] / "src"
    if str(repo_src) not in sys.path:
        sys.path.insert(0, str(repo_src))

try:
    from mtls_provision import (
        BundleMode,
        ProvisionConfig,
        ProvisionError,
        Provisioner,
        configure_logging,
        describe_bundle,
    )
except ModuleNotFoundError as exc:
    if exc.name in {"cryptography", "asn1crypto"}:
        raise SystemExit(
            f"Missing dependency: {exc.name}\n"
            "Install it with:\n"
            "  python3 -m pip install -e ."
        ) from exc
    raise


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Provision a signer/client pair into an output directory, creating "
            "random password files where none exist, and print a summary."
        )
    )
    parser.add_argument("--output-dir", default="tls", help="Output directory.")
    parser.add_argument(
        "--config",
        default=None,
        help="Optional JSON profile; output_dir in the profile wins over --output-dir.",
    )
    parser.add_argument("--clean", action="store_true", help="Regenerate from scratch.")
    return parser.parse_args(argv)


def _ensure_password(path: Path) -> bool:
    if path.exists():
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(secrets.token_urlsafe(24) + "\n", encoding="utf-8")
    path.chmod(0o600)
    return True


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging()

    if args.config:
        config = ProvisionConfig.from_file(args.config)
    else:
        config = ProvisionConfig.from_mapping({"output_dir": args.output_dir})

    created = [
        str(config.password_file(party))
        for party in (config.server, config.client)
        if _ensure_password(config.password_file(party))
    ]

    try:
        report = Provisioner(config).run(clean=args.clean)
        issues = Provisioner(config).verify()
    except ProvisionError as exc:
        print(f"Provisioning failed: {exc}", file=sys.stderr)
        return 1

    bundles = {}
    for path in report.artifacts:
        if path.suffix == ".p12":
            description = describe_bundle(path.read_bytes())
            bundles[str(path)] = {
                "mode": description.mode.value,
                "mac": description.mac_digest,
                "iterations": description.mac_iterations,
                "for_legacy_consumers": description.mode is BundleMode.LEGACY,
            }

    summary = {
        "created_password_files": created,
        "bundles": bundles,
        "trust_store": str(config.trust_store_path),
        "allowlist": report.allowlist_record.to_line() if report.allowlist_record else None,
        "issues": [str(issue) for issue in issues],
    }
    print(json.dumps(summary, indent=2))
    return 0 if not issues else 1


if __name__ == "__main__":
    raise SystemExit(main())
