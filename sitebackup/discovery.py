"""Remote directory discovery for SiteBackup.

Lists candidate backup roots on the server so the user can pick one:

- :func:`discover_domains` — first-level directories under the login root.
- :func:`list_remote_directories` — subdirectories of an arbitrary path.
- :func:`find_site_roots` — domain-named directories, preferring their
  ``public_html`` folder when present.
"""

from __future__ import annotations

import logging

from sitebackup.connection import Session
from sitebackup.errors import BackupError, FailureKind, classify
from sitebackup.utils.path_helpers import is_hidden, posix_join, validate_remote_path

logger = logging.getLogger(__name__)

_PUBLIC_HTML = "public_html"


def _visible_directories(session: Session, path: str):
    """Yield non-hidden directory entries of *path* in server order."""
    if not validate_remote_path(path):
        raise BackupError(FailureKind.FILESYSTEM, "Invalid remote path", repr(path))
    try:
        entries = session.listdir(path)
    except Exception as exc:
        raise classify(exc, f"Could not list {path}") from exc
    for entry in entries:
        if entry.is_directory and not is_hidden(entry.name):
            yield entry


def discover_domains(session: Session, root: str | None = None) -> list[str]:
    """Return the names of directories one level below *root*.

    *root* defaults to the session's login directory.  Non-directories and
    dot-entries are dropped; order is whatever the server returns.

    Raises:
        BackupError: If *root* cannot be listed.
    """
    root = root or session.home_directory()
    names = [entry.name for entry in _visible_directories(session, root)]
    logger.info("Discovered %d directories under %s", len(names), root)
    return names


def list_remote_directories(session: Session, path: str) -> list[str]:
    """Return sorted full paths of the visible subdirectories of *path*.

    An empty *path* means the filesystem root.
    """
    path = path or "/"
    return sorted(entry.path for entry in _visible_directories(session, path))


def _has_public_html(session: Session, directory: str) -> bool:
    try:
        session.stat(posix_join(directory, _PUBLIC_HTML))
        return True
    except OSError:
        return False


def find_site_roots(session: Session, root: str | None = None) -> list[str]:
    """Return backup roots for the hosted sites under *root*.

    A site directory is one whose name looks like a domain (contains a
    ``.``).  Its ``public_html`` subfolder is returned when it exists,
    otherwise the directory itself.  The result is sorted.
    """
    root = root or session.home_directory()
    roots: list[str] = []
    for entry in _visible_directories(session, root):
        if "." not in entry.name:
            continue
        if _has_public_html(session, entry.path):
            roots.append(posix_join(entry.path, _PUBLIC_HTML))
        else:
            roots.append(entry.path)
    roots.sort()
    logger.info("Found %d site roots under %s", len(roots), root)
    return roots
