"""Atomic file writes and permission helpers."""

from __future__ import annotations

import os
from pathlib import Path

PRIVATE_FILE_MODE = 0o600
PUBLIC_FILE_MODE = 0o644
PRIVATE_DIR_MODE = 0o700


def _temp_path(path: Path) -> Path:
    return path.parent / f".{path.name}.unpacktmp"


def atomic_write_bytes(path: Path, data: bytes, mode: int = PUBLIC_FILE_MODE) -> None:
    """
    Write `data` to `path` via temp file + rename.

    The temp file is created with `mode` already applied so secret material is
    never briefly world-readable.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = _temp_path(path)
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        tmp.replace(path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def atomic_write_text(path: Path, text: str, mode: int | None = None) -> None:
    """Write text atomically, keeping the current file mode when `mode` is None."""
    if mode is None:
        mode = existing_mode(path, default=PRIVATE_FILE_MODE)
    atomic_write_bytes(path, text.encode("utf-8"), mode=mode)


def existing_mode(path: Path, default: int) -> int:
    try:
        return path.stat().st_mode & 0o777
    except FileNotFoundError:
        return default


def ensure_private_dir(path: Path) -> None:
    """Create a directory readable only by the owner."""
    path.mkdir(parents=True, exist_ok=True, mode=PRIVATE_DIR_MODE)


def home_relative(path: Path, placeholder: str = "%d") -> str:
    """Render `path` with the home directory replaced by an SSH placeholder."""
    home = Path.home()
    try:
        rel = path.relative_to(home)
    except ValueError:
        return str(path)
    return f"{placeholder}/{rel.as_posix()}"
