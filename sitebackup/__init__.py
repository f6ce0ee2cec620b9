"""SiteBackup — one-way SFTP backup of a remote directory tree.

:func:`run_backup` is the whole run: connect, walk and copy, tear down.
"""

from __future__ import annotations

import logging
import os

from sitebackup.cancellation import CancellationToken
from sitebackup.connection import CONNECT_TIMEOUT, SshConnectionConfig, connect
from sitebackup.errors import BackupError, BackupStatus, CancelledByUser, FailureKind, status_for
from sitebackup.progress import BackupPhase, BackupProgress, ProgressSink
from sitebackup.transfer import BackupEngine, BackupResult, FailedFile

logger = logging.getLogger(__name__)

__all__ = [
    "BackupEngine",
    "BackupError",
    "BackupPhase",
    "BackupProgress",
    "BackupResult",
    "BackupStatus",
    "CancellationToken",
    "FailedFile",
    "FailureKind",
    "SshConnectionConfig",
    "run_backup",
    "status_for",
]


def run_backup(
    config: SshConnectionConfig,
    remote_root: str,
    local_root: str | os.PathLike[str],
    progress_sink: ProgressSink | None = None,
    cancel: CancellationToken | None = None,
    engine: BackupEngine | None = None,
    connect_timeout: float = CONNECT_TIMEOUT,
) -> BackupResult:
    """Back up *remote_root* on *config*'s server into *local_root*.

    Opens a dedicated session for this run and closes it on every exit
    path (success, error or cancellation).  Connection failures are not
    retried.

    Raises:
        ValueError: *config* is invalid.
        BackupError: Classified failure, including ``CANCELLED``.
    """
    cancel = cancel or CancellationToken()
    engine = engine or BackupEngine()

    if cancel.cancelled:
        # Nothing has been opened yet; skip the connection entirely.
        if progress_sink is not None:
            try:
                progress_sink(BackupProgress(BackupPhase.CANCELLED, 0, 0, 0.0))
            except Exception:
                logger.exception("Exception in progress sink")
        raise CancelledByUser()

    session = connect(config, connect_timeout=connect_timeout)
    try:
        return engine.backup(session, remote_root, local_root, progress_sink, cancel)
    finally:
        session.close()
