"""Remote/local path normalisation and validation utilities."""

from __future__ import annotations

import logging
import os
import posixpath
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)


def posix_join(*parts: str) -> str:
    """Join path parts using POSIX (forward-slash) rules.

    Suitable for constructing remote server paths regardless of the
    local OS.
    """
    return posixpath.join(*parts)


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units (KiB/MiB/GiB) but labels them KB/MB/GB for
    familiarity with everyday usage.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def is_hidden(name: str) -> bool:
    """Return True for dot-entries, which are never traversed or copied."""
    return name.startswith(".")


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe for SFTP operations.

    Rejects empty paths and paths that contain null bytes or path-traversal
    sequences (``..``).
    """
    if not path:
        logger.warning("Remote path rejected — empty")
        return False
    if "\x00" in path:
        logger.warning("Remote path rejected — contains null byte: %r", path)
        return False
    parts = str(PurePosixPath(path)).split("/")
    if ".." in parts:
        logger.warning("Remote path rejected — contains '..': %r", path)
        return False
    return True


def is_safe_entry_name(name: str) -> bool:
    """Return True if a remote directory entry name can be mirrored locally.

    A listing from an untrusted server may contain names with separators or
    ``..`` that would escape the local backup root.
    """
    if not name or name in (".", ".."):
        return False
    if "\x00" in name or "/" in name:
        return False
    if os.sep in name or (os.altsep and os.altsep in name):
        return False
    return True


def normalize_local_path(path: str | os.PathLike[str]) -> Path:
    """Resolve *path* to an absolute ``pathlib.Path`` on the local filesystem."""
    return Path(path).expanduser().resolve()
