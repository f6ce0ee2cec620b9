"""Failure taxonomy and classification for SiteBackup.

Every failure that leaves the engine is a :class:`BackupError` tagged with a
:class:`FailureKind`.  :func:`classify` maps raw exceptions (paramiko, socket
and filesystem errors) onto that closed set by type and errno, keeping the
original exception attached so no technical detail is lost.
"""

from __future__ import annotations

import errno
import logging
import re
import socket
from enum import Enum, auto

import paramiko

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Kinds
# ---------------------------------------------------------------------------


class FailureKind(Enum):
    """Closed set of failure categories reported to callers."""

    AUTHENTICATION = auto()
    CONNECTION = auto()
    PERMISSION = auto()
    DISK_SPACE = auto()
    TIMEOUT = auto()
    FILESYSTEM = auto()
    DEPTH_LIMIT = auto()
    CANCELLED = auto()
    UNKNOWN = auto()


class BackupStatus(Enum):
    """Terminal status of a run, as recorded by history consumers."""

    SUCCESS = auto()
    PARTIAL = auto()
    FAILED = auto()
    CANCELLED = auto()


TRANSIENT_KINDS = frozenset({FailureKind.CONNECTION, FailureKind.TIMEOUT})

_GUIDANCE: dict[FailureKind, str] = {
    FailureKind.AUTHENTICATION: (
        "Public-key authentication was rejected. Check the username, that the "
        "key is registered on the server, and that the host key is trusted."
    ),
    FailureKind.CONNECTION: (
        "Could not reach the server or the connection dropped. Check the "
        "hostname, port and network connectivity."
    ),
    FailureKind.PERMISSION: (
        "Access was denied. Check permissions on the remote path and on the "
        "local backup folder."
    ),
    FailureKind.DISK_SPACE: "The local disk is full. Free some space and run the backup again.",
    FailureKind.TIMEOUT: "The operation took too long. The server or network may be slow or overloaded.",
    FailureKind.FILESYSTEM: "A path is missing or is not the expected type (file vs. directory).",
    FailureKind.DEPTH_LIMIT: (
        "The remote tree is nested deeper than allowed. It may contain a "
        "directory cycle."
    ),
    FailureKind.CANCELLED: "The backup was cancelled.",
    FailureKind.UNKNOWN: "An unexpected error occurred.",
}

_DISK_FULL_ERRNOS = frozenset({errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)})
_FILESYSTEM_ERRNOS = frozenset({errno.ENOENT, errno.ENOTDIR, errno.EISDIR, errno.EEXIST, errno.ENAMETOOLONG})
_NETWORK_ERRNOS = frozenset(
    {
        errno.ECONNREFUSED,
        errno.ECONNRESET,
        errno.ECONNABORTED,
        errno.EPIPE,
        errno.ENETUNREACH,
        errno.ENETDOWN,
        errno.EHOSTUNREACH,
    }
)

_PRIVATE_KEY_BLOCK = re.compile(
    r"-----BEGIN [A-Z0-9 ]*PRIVATE KEY-----.*?(-----END [A-Z0-9 ]*PRIVATE KEY-----|$)",
    re.DOTALL,
)


def scrub(text: str) -> str:
    """Remove any private-key block from *text*."""
    return _PRIVATE_KEY_BLOCK.sub("[private key redacted]", text)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class BackupError(Exception):
    """A classified failure.

    Attributes:
        kind: The :class:`FailureKind` this failure belongs to.
        message: Short human-readable summary.
        detail: Technical detail from the underlying error (may be empty).
        guidance: User-facing hint for the kind.
        attempts: Number of attempts made before giving up (0 if the
            operation was never retried, e.g. connection setup).
        transferred_files: Files completed before the run stopped.
    """

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        detail: str = "",
        attempts: int = 0,
        transferred_files: int = 0,
    ) -> None:
        """Initialise, scrubbing key material from message and detail."""
        self.kind = kind
        self.message = scrub(message)
        self.detail = scrub(detail)
        self.guidance = _GUIDANCE[kind]
        self.attempts = attempts
        self.transferred_files = transferred_files
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.detail and self.detail != self.message:
            return f"{self.message}: {self.detail}"
        return self.message

    def __repr__(self) -> str:
        return f"BackupError({self.kind.name}, {str(self)!r})"

    @property
    def is_transient(self) -> bool:
        """True if retrying the same operation may succeed."""
        return self.kind in TRANSIENT_KINDS


class FileTransferTimeout(TimeoutError):
    """Raised when a single file copy exceeds its size-tiered deadline."""


class DepthLimitExceeded(BackupError):
    """Raised when the walk would descend below the maximum depth."""

    def __init__(self, path: str, depth: int, max_depth: int) -> None:
        super().__init__(
            FailureKind.DEPTH_LIMIT,
            f"Directory tree too deep at {path}",
            f"depth {depth} exceeds limit {max_depth}",
        )
        self.path = path
        self.depth = depth


class CancelledByUser(BackupError):
    """Raised at the first safe point after cancellation was requested."""

    def __init__(self, transferred_files: int = 0) -> None:
        super().__init__(
            FailureKind.CANCELLED,
            "Backup cancelled by user",
            transferred_files=transferred_files,
        )


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _kind_for(exc: BaseException) -> FailureKind:
    """Return the :class:`FailureKind` for a raw exception."""
    # Order matters: paramiko's host-key and auth errors subclass SSHException,
    # and socket.timeout / PermissionError subclass OSError.
    if isinstance(exc, paramiko.AuthenticationException):
        return FailureKind.AUTHENTICATION
    if isinstance(exc, paramiko.BadHostKeyException):
        return FailureKind.AUTHENTICATION
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return FailureKind.TIMEOUT
    if isinstance(exc, PermissionError):
        return FailureKind.PERMISSION
    if isinstance(exc, (FileNotFoundError, NotADirectoryError, IsADirectoryError)):
        return FailureKind.FILESYSTEM
    if isinstance(exc, (ConnectionError, EOFError, socket.gaierror)):
        return FailureKind.CONNECTION
    if isinstance(exc, paramiko.SSHException):
        return FailureKind.CONNECTION
    if isinstance(exc, OSError):
        if exc.errno in _DISK_FULL_ERRNOS:
            return FailureKind.DISK_SPACE
        if exc.errno == errno.EACCES or exc.errno == errno.EPERM:
            return FailureKind.PERMISSION
        if exc.errno in _FILESYSTEM_ERRNOS:
            return FailureKind.FILESYSTEM
        if exc.errno in _NETWORK_ERRNOS:
            return FailureKind.CONNECTION
        if exc.errno == errno.ETIMEDOUT:
            return FailureKind.TIMEOUT
        # paramiko.ssh_exception.NoValidConnectionsError carries no errno of its own
        if isinstance(exc, paramiko.ssh_exception.NoValidConnectionsError):
            return FailureKind.CONNECTION
    return FailureKind.UNKNOWN


def classify(exc: BaseException, context: str = "") -> BackupError:
    """Wrap *exc* in a :class:`BackupError`.

    A :class:`BackupError` is returned unchanged.  Otherwise the new error's
    ``detail`` is the original exception text and the original exception is
    attached as ``__cause__``.

    Args:
        exc: The raw exception.
        context: Optional short description of what was being attempted
            (e.g. ``"download /site/a.txt"``); used as the message.
    """
    if isinstance(exc, BackupError):
        return exc

    kind = _kind_for(exc)
    detail = str(exc) or type(exc).__name__
    message = context or kind.name.replace("_", " ").capitalize() + " failure"
    error = BackupError(kind, message, detail)
    error.__cause__ = exc
    logger.debug("Classified %s as %s", type(exc).__name__, kind.name)
    return error


def status_for(error: BaseException | None, partial: bool = False) -> BackupStatus:
    """Map a run's outcome to a :class:`BackupStatus`.

    ``None`` means the run returned a result; *partial* marks a result that
    recorded failed files.
    """
    if error is None:
        return BackupStatus.PARTIAL if partial else BackupStatus.SUCCESS
    if isinstance(error, BackupError) and error.kind is FailureKind.CANCELLED:
        return BackupStatus.CANCELLED
    return BackupStatus.FAILED
