from __future__ import annotations

import hashlib
import hmac
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .exceptions import PackagingError, format_exception


def _wipe(buffer: bytearray) -> None:
    buffer[:] = b"\x00" * len(buffer)


def read_password(path: str | Path) -> bytearray:
    """
    Read the single secret held by a password file.

    Trailing line breaks are dropped, matching how a shell substitution of
    the file would pass it along. The caller owns the returned buffer and
    should wipe it; open_password does that automatically.
    """
    source = Path(path)
    try:
        buffer = bytearray(source.read_bytes())
    except OSError as exc:
        raise PackagingError(
            f"Password source {source} is unreadable: {format_exception(exc)}"
        ) from exc

    end = len(buffer)
    while end > 0 and buffer[end - 1] in (0x0A, 0x0D):
        end -= 1
    if end != len(buffer):
        tail = len(buffer) - end
        buffer[end:] = b"\x00" * tail
        del buffer[end:]

    if not buffer:
        raise PackagingError(f"Password source {source} is empty.")
    return buffer


@contextmanager
def open_password(path: str | Path) -> Iterator[bytearray]:
    buffer = read_password(path)
    try:
        yield buffer
    finally:
        _wipe(buffer)


def same_password(first: str | Path, second: str | Path) -> bool:
    with open_password(first) as left, open_password(second) as right:
        return hmac.compare_digest(
            hashlib.sha256(left).digest(), hashlib.sha256(right).digest()
        )
