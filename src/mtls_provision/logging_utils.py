from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAMESPACE = "mtls_provision"

DEFAULT_LOG_FILE = "logs/mtls-provision.log"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 5

REDACTED_PRIVATE_KEY = "[REDACTED PRIVATE KEY]"

# PKCS#8, encrypted PKCS#8 and the traditional RSA/EC armor labels.
_PRIVATE_KEY_BLOCK = re.compile(
    r"-----BEGIN (?:[A-Z0-9]+ )*PRIVATE KEY-----.*?"
    r"(?:-----END (?:[A-Z0-9]+ )*PRIVATE KEY-----|\Z)",
    re.DOTALL,
)


def redact_private_keys(text: str) -> str:
    """Replace every PEM private key block, complete or truncated, in text."""
    return _PRIVATE_KEY_BLOCK.sub(REDACTED_PRIVATE_KEY, text)


class RedactingFormatter(logging.Formatter):
    """
    Formatter that strips PEM private key blocks from the rendered record,
    including exception text and stack information.
    """

    def format(self, record: logging.LogRecord) -> str:
        return redact_private_keys(super().format(record))


def _parse_int(value: str, name: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {value}") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be >= 0, got: {value}")
    return parsed


def _resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    normalized = level.strip().upper()
    if normalized.isdigit():
        return int(normalized)
    numeric = getattr(logging, normalized, None)
    if not isinstance(numeric, int):
        raise ValueError(f"Invalid log level: {level}")
    return numeric


@dataclass(frozen=True)
class LogSettings:
    log_file: Path
    level: int
    max_bytes: int
    backup_count: int

    @classmethod
    def resolve(
        cls,
        *,
        log_file: str | Path | None = None,
        level: str | int | None = None,
        max_bytes: int | None = None,
        backup_count: int | None = None,
    ) -> "LogSettings":
        """Explicit arguments win over MTLS_PROVISION_LOG_* variables."""
        if max_bytes is None:
            max_bytes = _parse_int(
                os.environ.get("MTLS_PROVISION_LOG_MAX_BYTES", str(DEFAULT_LOG_MAX_BYTES)),
                "MTLS_PROVISION_LOG_MAX_BYTES",
            )
        if backup_count is None:
            backup_count = _parse_int(
                os.environ.get(
                    "MTLS_PROVISION_LOG_BACKUP_COUNT", str(DEFAULT_LOG_BACKUP_COUNT)
                ),
                "MTLS_PROVISION_LOG_BACKUP_COUNT",
            )
        if max_bytes < 0:
            raise ValueError("max_bytes must be >= 0.")
        if backup_count < 0:
            raise ValueError("backup_count must be >= 0.")
        return cls(
            log_file=Path(
                str(log_file or os.environ.get("MTLS_PROVISION_LOG_FILE", DEFAULT_LOG_FILE))
            ),
            level=_resolve_level(
                level or os.environ.get("MTLS_PROVISION_LOG_LEVEL", DEFAULT_LOG_LEVEL)
            ),
            max_bytes=max_bytes,
            backup_count=backup_count,
        )


def _find_handler(logger: logging.Logger, path: Path) -> RotatingFileHandler | None:
    resolved = path.resolve()
    for existing in logger.handlers:
        if (
            isinstance(existing, RotatingFileHandler)
            and Path(existing.baseFilename).resolve() == resolved
        ):
            return existing
    return None


def configure_logging(
    *,
    log_file: str | Path | None = None,
    level: str | int | None = None,
    max_bytes: int | None = None,
    backup_count: int | None = None,
) -> logging.Logger:
    """
    Configure rotating file logging for the mtls_provision logger namespace.

    Environment variable overrides:
    - MTLS_PROVISION_LOG_FILE
    - MTLS_PROVISION_LOG_LEVEL
    - MTLS_PROVISION_LOG_MAX_BYTES
    - MTLS_PROVISION_LOG_BACKUP_COUNT

    Callers log paths, party names, bundle modes and fingerprints. The
    handler's formatter also removes any PEM private key block that reaches a
    record, so a key serialized into an exception message never lands on disk.
    """
    settings = LogSettings.resolve(
        log_file=log_file, level=level, max_bytes=max_bytes, backup_count=backup_count
    )
    settings.log_file.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(LOGGER_NAMESPACE)
    logger.setLevel(settings.level)
    logger.propagate = False

    existing = _find_handler(logger, settings.log_file)
    if existing is not None:
        existing.setLevel(settings.level)
        return logger

    handler = RotatingFileHandler(
        settings.log_file,
        maxBytes=settings.max_bytes,
        backupCount=settings.backup_count,
        encoding="utf-8",
    )
    handler.setLevel(settings.level)
    handler.setFormatter(
        RedactingFormatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    )
    logger.addHandler(handler)

    logger.info(
        "Configured rotating file logging (path=%s, level=%s, max_bytes=%d, backup_count=%d)",
        settings.log_file,
        logging.getLevelName(settings.level),
        settings.max_bytes,
        settings.backup_count,
    )
    return logger
