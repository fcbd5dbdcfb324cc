from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from asn1crypto import x509

from .exceptions import ExportError, format_exception
from .files import PUBLIC_FILE_MODE, atomic_write_bytes
from .x509_ops import sha256_fingerprint

ALLOWLIST_FILENAME = "known_clients.txt"

_logger = logging.getLogger("mtls_provision.allowlist")

_WHITESPACE = re.compile(r"\s")


class FingerprintFormat(str, Enum):
    # aabbcc...
    HEX = "hex"
    # AA:BB:CC..., as printed by `openssl x509 -fingerprint -sha256`
    OPENSSL = "openssl"


def resolve_fingerprint_format(value: FingerprintFormat | str) -> FingerprintFormat:
    if isinstance(value, FingerprintFormat):
        return value
    try:
        return FingerprintFormat(str(value).strip().lower())
    except ValueError as exc:
        available = ", ".join(f.value for f in FingerprintFormat)
        raise ValueError(
            f"Unsupported fingerprint format '{value}'. Use one of: {available}."
        ) from exc


def format_fingerprint(digest: bytes, fmt: FingerprintFormat | str = FingerprintFormat.HEX) -> str:
    resolved = resolve_fingerprint_format(fmt)
    if resolved is FingerprintFormat.OPENSSL:
        return ":".join(f"{b:02X}" for b in digest)
    return digest.hex()


def normalize_fingerprint(value: str) -> str:
    """Reduce any accepted spelling to lowercase hex for comparison."""
    return value.replace(":", "").strip().lower()


def certificate_fingerprint(
    certificate: x509.Certificate,
    fmt: FingerprintFormat | str = FingerprintFormat.HEX,
) -> str:
    return format_fingerprint(sha256_fingerprint(certificate), fmt)


def validate_label(label: str) -> str:
    if not label or not label.strip():
        raise ValueError("Allowlist label must not be empty.")
    if _WHITESPACE.search(label):
        raise ValueError(f"Allowlist label must not contain whitespace: {label!r}")
    return label


@dataclass(frozen=True)
class TrustRecord:
    label: str
    fingerprint: str

    def to_line(self) -> str:
        return f"{self.label} {self.fingerprint}"


@dataclass
class TrustAllowlist:
    """Ordered client fingerprints accepted by the server-side signer."""

    records: list[TrustRecord] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> "TrustAllowlist":
        records: list[TrustRecord] = []
        for lineno, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()
            if not line:
                continue
            parts = line.split()
            if len(parts) != 2:
                raise ValueError(
                    f"line {lineno}: expected '<label> <fingerprint>', got {raw!r}"
                )
            records.append(TrustRecord(label=parts[0], fingerprint=parts[1]))
        return cls(records=records)

    @classmethod
    def load(cls, path: str | Path) -> "TrustAllowlist":
        source = Path(path)
        if not source.exists():
            return cls()
        try:
            return cls.parse(source.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            raise ExportError(
                f"Unable to read allowlist {source}: {format_exception(exc)}"
            ) from exc

    def render(self) -> str:
        return "".join(f"{record.to_line()}\n" for record in self.records)

    def get(self, label: str) -> TrustRecord | None:
        for record in self.records:
            if record.label == label:
                return record
        return None

    def upsert(self, record: TrustRecord) -> bool:
        """
        Put record in the position of the first entry with the same label,
        dropping any further entries for that label, or append it.
        Returns True when the list changed.
        """
        updated: list[TrustRecord] = []
        placed = False
        for existing in self.records:
            if existing.label != record.label:
                updated.append(existing)
            elif not placed:
                updated.append(record)
                placed = True
        if not placed:
            updated.append(record)
        changed = updated != self.records
        self.records = updated
        return changed

    def remove(self, label: str) -> bool:
        kept = [r for r in self.records if r.label != label]
        changed = len(kept) != len(self.records)
        self.records = kept
        return changed

    def save(self, path: str | Path) -> Path:
        target = Path(path)
        try:
            return atomic_write_bytes(
                target, self.render().encode("utf-8"), mode=PUBLIC_FILE_MODE
            )
        except OSError as exc:
            raise ExportError(
                f"Unable to write allowlist {target}: {format_exception(exc)}"
            ) from exc


def export_fingerprint(
    certificate: x509.Certificate,
    label: str,
    path: str | Path,
    *,
    fmt: FingerprintFormat | str = FingerprintFormat.HEX,
) -> TrustRecord:
    """
    Write or refresh the allowlist line for label with the certificate's
    SHA-256 fingerprint. A stale line for the same label is replaced.
    """
    try:
        validate_label(label)
        fingerprint = certificate_fingerprint(certificate, fmt)
    except ValueError as exc:
        raise ExportError(str(exc)) from exc

    record = TrustRecord(label=label, fingerprint=fingerprint)
    allowlist = TrustAllowlist.load(path)
    previous = allowlist.get(label)
    if not allowlist.upsert(record):
        _logger.info("Allowlist already current label=%s path=%s", label, path)
        return record

    allowlist.save(path)
    if previous is not None and previous.fingerprint != fingerprint:
        _logger.info(
            "Replaced stale allowlist entry label=%s old=%s new=%s path=%s",
            label,
            previous.fingerprint,
            fingerprint,
            path,
        )
    else:
        _logger.info(
            "Wrote allowlist entry label=%s fingerprint=%s path=%s",
            label,
            fingerprint,
            path,
        )
    return record
