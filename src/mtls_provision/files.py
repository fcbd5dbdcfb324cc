from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path
from typing import Mapping

PRIVATE_FILE_MODE = 0o600
PUBLIC_FILE_MODE = 0o644


def _write_temp(target: Path, data: bytes, mode: int) -> Path:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
    temp_path = Path(temp_name)
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink()
        raise
    return temp_path


def atomic_write_bytes(path: str | Path, data: bytes, *, mode: int = PUBLIC_FILE_MODE) -> Path:
    target = Path(path)
    temp_path = _write_temp(target, data, mode)
    try:
        os.replace(temp_path, target)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink()
        raise
    return target


def _backup_path(target: Path) -> Path:
    return target.with_name(f".{target.name}.{os.urandom(4).hex()}.bak")


def atomic_write_group(files: Mapping[Path, tuple[bytes, int]]) -> list[Path]:
    """
    Write several files so that either all of them hold the new content or
    all of them keep their previous content.

    Every file is staged before anything is replaced. Existing targets are
    hard-linked aside first; if a later replace fails, the targets already
    replaced are restored from those links, or removed when they did not
    exist before.
    """
    staged: dict[Path, Path] = {}
    backups: dict[Path, Path | None] = {}
    replaced: list[Path] = []
    try:
        for target, (data, mode) in files.items():
            staged[target] = _write_temp(target, data, mode)
        for target in staged:
            if target.exists():
                backup = _backup_path(target)
                os.link(target, backup)
                backups[target] = backup
            else:
                backups[target] = None
        for target, temp_path in staged.items():
            os.replace(temp_path, target)
            replaced.append(target)
    except BaseException:
        for target in reversed(replaced):
            backup = backups.get(target)
            with contextlib.suppress(OSError):
                if backup is not None:
                    os.replace(backup, target)
                else:
                    target.unlink()
        for temp_path in staged.values():
            with contextlib.suppress(OSError):
                temp_path.unlink()
        for backup in backups.values():
            if backup is not None:
                with contextlib.suppress(OSError):
                    backup.unlink()
        raise

    for backup in backups.values():
        if backup is not None:
            with contextlib.suppress(OSError):
                backup.unlink()
    return list(staged.keys())
