"""Recursive backup engine for SiteBackup.

Walks a remote tree depth-first over one :class:`~sitebackup.connection.Session`
and mirrors it under a local root:

- One file at a time, streamed in fixed-size chunks
- Partial files written as ``.<name>.part`` and renamed on completion
- Per-file deadline tiered by file size
- Per-file retry of transient failures (:class:`~sitebackup.retry.RetryPolicy`)
- Cooperative cancellation polled at directory entry and before each file
- Throttled progress events via one :class:`~sitebackup.progress.ProgressThrottle`
"""

from __future__ import annotations

import logging
import os
import stat
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from sitebackup.cancellation import CancellationToken
from sitebackup.connection import RemoteEntry, Session
from sitebackup.errors import (
    BackupError,
    BackupStatus,
    CancelledByUser,
    DepthLimitExceeded,
    FailureKind,
    FileTransferTimeout,
    classify,
    status_for,
)
from sitebackup.progress import (
    BYTE_THRESHOLD,
    UPDATE_INTERVAL,
    BackupPhase,
    BackupProgress,
    ProgressSink,
    ProgressThrottle,
    TransferState,
)
from sitebackup.retry import RetryPolicy, RetryRecord
from sitebackup.utils.path_helpers import (
    human_readable_size,
    is_hidden,
    is_safe_entry_name,
    normalize_local_path,
    validate_remote_path,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024          # 256 KB per read/write call
MAX_DEPTH = 50                   # deepest directory level that is still listed
PARTIAL_SUFFIX = ".part"

_MB = 1000 * 1000
_GB = 1000 * _MB
# (exclusive upper size bound, timeout seconds); files >= 1 GB get _LARGE_FILE_TIMEOUT
_TIMEOUT_TIERS = (
    (10 * _MB, 60.0),
    (100 * _MB, 120.0),
    (_GB, 600.0),
)
_LARGE_FILE_TIMEOUT = 1800.0

# Failures after which continuing the walk cannot succeed.
_ABORT_KINDS = frozenset(
    {
        FailureKind.AUTHENTICATION,
        FailureKind.CONNECTION,
        FailureKind.DISK_SPACE,
        FailureKind.CANCELLED,
        FailureKind.DEPTH_LIMIT,
    }
)


def calculate_file_timeout(file_size: int) -> float:
    """Return the transfer deadline in seconds for a file of *file_size* bytes."""
    for upper_bound, timeout in _TIMEOUT_TIERS:
        if file_size < upper_bound:
            return timeout
    return _LARGE_FILE_TIMEOUT


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class FailedFile:
    """A remote file or directory that could not be backed up."""

    remote_path: str
    kind: FailureKind
    error: str
    attempts: int


@dataclass
class BackupResult:
    """Outcome of a run that reached the end of the walk."""

    message: str
    transferred_files: int
    elapsed_seconds: float
    transferred_bytes: int = 0
    failed_files: list[FailedFile] = field(default_factory=list)
    retries: int = 0

    @property
    def status(self) -> BackupStatus:
        """``SUCCESS``, or ``PARTIAL`` if any entry failed."""
        return status_for(None, partial=bool(self.failed_files))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@dataclass
class _Run:
    """Everything one :meth:`BackupEngine.backup` call threads through the walk."""

    session: Session
    sink: Optional[ProgressSink]
    cancel: CancellationToken
    state: TransferState
    throttle: ProgressThrottle
    failed: list[FailedFile] = field(default_factory=list)


class BackupEngine:
    """Sequential depth-first remote-to-local backup.

    An engine holds only settings; all per-run state lives in the
    :class:`_Run` created by each :meth:`backup` call, so one engine can be
    reused for consecutive runs.
    """

    def __init__(
        self,
        chunk_size: int = CHUNK_SIZE,
        max_depth: int = MAX_DEPTH,
        retry_policy: RetryPolicy | None = None,
        progress_interval: float = UPDATE_INTERVAL,
        progress_byte_threshold: int = BYTE_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise engine settings.

        Args:
            chunk_size: Bytes per read/write call.
            max_depth: Deepest directory level (root is 0) that is listed.
            retry_policy: Per-file retry policy; defaults to
                :class:`RetryPolicy` with its standard parameters.
            progress_interval: Minimum seconds between throttled events.
            progress_byte_threshold: Bytes that force an event regardless
                of the interval.
            clock: Monotonic clock for deadlines, elapsed time and speed.
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size
        self.max_depth = max_depth
        self.retry_policy = retry_policy or RetryPolicy()
        self.progress_interval = progress_interval
        self.progress_byte_threshold = progress_byte_threshold
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def backup(
        self,
        session: Session,
        remote_root: str,
        local_root: str | os.PathLike[str],
        progress_sink: ProgressSink | None = None,
        cancel: CancellationToken | None = None,
    ) -> BackupResult:
        """Copy the tree under *remote_root* into *local_root*.

        Entries whose name starts with ``.`` are skipped.  A file that still
        fails after its retries is listed in :attr:`BackupResult.failed_files`
        and the walk continues, unless the failure kind makes further
        progress impossible.

        Raises:
            BackupError: Run-level failure (connection lost, disk full,
                remote root missing, ...).
            DepthLimitExceeded: The tree is deeper than :attr:`max_depth`.
            CancelledByUser: *cancel* was set; ``transferred_files`` holds
                the files completed before the stop.
            RuntimeError: *session* already has an active transfer.
        """
        if not validate_remote_path(remote_root):
            raise BackupError(FailureKind.FILESYSTEM, "Invalid remote path", repr(remote_root))
        remote_root = remote_root.rstrip("/") or "/"
        local_root = normalize_local_path(local_root)

        with session.active_transfer():
            run = _Run(
                session=session,
                sink=progress_sink,
                cancel=cancel or CancellationToken(),
                state=TransferState(clock=self._clock),
                throttle=ProgressThrottle(
                    interval=self.progress_interval,
                    byte_threshold=self.progress_byte_threshold,
                    clock=self._clock,
                ),
            )
            logger.info("Backup started: %s → %s", remote_root, local_root)
            self._emit(run, BackupPhase.STARTING)

            try:
                self._check_remote_root(run, remote_root)
                local_root.mkdir(parents=True, exist_ok=True)
                self._walk(run, remote_root, local_root, depth=0)
            except CancelledByUser as exc:
                exc.transferred_files = run.state.transferred_files
                logger.info("Backup cancelled after %d file(s)", exc.transferred_files)
                self._emit(run, BackupPhase.CANCELLED)
                raise
            except BackupError as exc:
                exc.transferred_files = run.state.transferred_files
                logger.error("Backup aborted: %s", exc)
                raise
            except Exception as exc:
                error = classify(exc, "Backup failed")
                error.transferred_files = run.state.transferred_files
                logger.error("Backup aborted: %s", error)
                raise error from exc

            return self._finish(run, remote_root, local_root)

    # ------------------------------------------------------------------
    # Walk
    # ------------------------------------------------------------------

    def _check_remote_root(self, run: _Run, remote_root: str) -> None:
        """Ensure *remote_root* exists and is a directory."""
        self._emit(run, BackupPhase.CHECKING_REMOTE, current_file=remote_root)
        try:
            attr = run.session.stat(remote_root)
        except Exception as exc:
            raise classify(exc, f"Cannot access remote folder {remote_root}") from exc
        if not stat.S_ISDIR(attr.st_mode or 0):
            raise BackupError(
                FailureKind.FILESYSTEM,
                f"Remote path is not a directory: {remote_root}",
            )

    def _walk(self, run: _Run, remote_dir: str, local_dir: Path, depth: int) -> None:
        """Back up *remote_dir* into *local_dir*, recursing into subdirectories."""
        if run.cancel.cancelled:
            raise CancelledByUser()
        if depth > self.max_depth:
            raise DepthLimitExceeded(remote_dir, depth, self.max_depth)

        record = RetryRecord()
        try:
            entries = self.retry_policy.call(
                lambda: run.session.listdir(remote_dir),
                label=f"list {remote_dir}",
                cancel=run.cancel,
                record=record,
            )
        except BackupError as exc:
            if depth == 0 or exc.kind in _ABORT_KINDS:
                raise
            self._record_failure(run, remote_dir, exc)
            return
        finally:
            run.state.add_retries(record.retries)

        try:
            local_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            error = classify(exc, f"Cannot create local folder {local_dir}")
            if depth == 0 or error.kind in _ABORT_KINDS:
                raise error from exc
            self._record_failure(run, remote_dir, error)
            return

        for entry in entries:
            if is_hidden(entry.name):
                logger.debug("Skipping hidden entry %s", entry.path)
                continue
            if not is_safe_entry_name(entry.name):
                self._record_failure(
                    run,
                    entry.path,
                    BackupError(FailureKind.FILESYSTEM, "Unsafe entry name", repr(entry.name)),
                )
                continue

            local_path = local_dir / entry.name
            if entry.is_directory:
                self._walk(run, entry.path, local_path, depth + 1)
            elif entry.is_file:
                if run.cancel.cancelled:
                    raise CancelledByUser()
                self._backup_file(run, entry, local_path)
            else:
                logger.debug("Skipping non-regular entry %s", entry.path)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def _backup_file(self, run: _Run, entry: RemoteEntry, local_path: Path) -> None:
        """Copy one file with retries; record it as failed if that is not fatal."""
        run.state.set_current_file(entry.path)
        self._maybe_emit(run)

        record = RetryRecord()
        try:
            self.retry_policy.call(
                lambda: self._copy_file(run, entry, local_path),
                label=f"download {entry.path}",
                cancel=run.cancel,
                record=record,
            )
        except BackupError as exc:
            if exc.kind in _ABORT_KINDS:
                raise
            self._record_failure(run, entry.path, exc)
        else:
            count = run.state.file_done()
            logger.debug("Copied %s (%d bytes) — %d file(s) done", entry.path, entry.size, count)
        finally:
            run.state.add_retries(record.retries)

    def _copy_file(self, run: _Run, entry: RemoteEntry, local_path: Path) -> None:
        """One attempt at streaming *entry* to *local_path*.

        Data goes to ``.<name>.part`` first and is renamed over *local_path*
        only when complete; a failed attempt removes the partial file.
        """
        timeout = calculate_file_timeout(entry.size)
        deadline = self._clock() + timeout
        part_path = local_path.with_name(f".{local_path.name}{PARTIAL_SUFFIX}")

        run.session.set_read_timeout(timeout)
        try:
            with run.session.open_file(entry.path) as remote_fh:
                if entry.size > 0:
                    # Pipelined read-ahead instead of one round-trip per chunk.
                    remote_fh.prefetch(entry.size)
                with open(part_path, "wb") as local_fh:
                    self._stream(run, remote_fh, local_fh, entry, deadline, timeout)
            os.replace(part_path, local_path)
        except BaseException:
            try:
                part_path.unlink()
            except OSError:
                pass  # never created
            raise
        finally:
            run.session.set_read_timeout(None)

    def _stream(self, run: _Run, src, dst, entry: RemoteEntry, deadline: float, timeout: float) -> None:
        """Copy *src* to *dst* in chunks, counting bytes and enforcing *deadline*."""
        while True:
            chunk = src.read(self.chunk_size)
            if not chunk:
                break
            dst.write(chunk)
            total = run.state.add_bytes(len(chunk))
            self._maybe_emit(run, total)
            if self._clock() > deadline:
                raise FileTransferTimeout(f"{entry.path} exceeded the {timeout:.0f}s transfer timeout")

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _record_failure(self, run: _Run, remote_path: str, error: BackupError) -> None:
        failed = FailedFile(
            remote_path=remote_path,
            kind=error.kind,
            error=str(error),
            attempts=error.attempts,
        )
        run.failed.append(failed)
        logger.warning("Skipping %s after %d attempt(s): %s", remote_path, failed.attempts, error)

    def _finish(self, run: _Run, remote_root: str, local_root: Path) -> BackupResult:
        files, total_bytes, _ = run.state.snapshot()
        elapsed = run.state.elapsed_seconds()
        message = (
            f"Backup complete: {files} file(s), {human_readable_size(total_bytes)} "
            f"from {remote_root} to {local_root}"
        )
        if run.failed:
            message += f" ({len(run.failed)} failed)"
        result = BackupResult(
            message=message,
            transferred_files=files,
            elapsed_seconds=elapsed,
            transferred_bytes=total_bytes,
            failed_files=list(run.failed),
            retries=run.state.retries,
        )
        run.state.set_current_file(None)
        self._emit(run, BackupPhase.COMPLETED, total_files=files)
        logger.info("%s in %.1fs", message, elapsed)
        return result

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def _maybe_emit(self, run: _Run, total_bytes: int | None = None) -> None:
        """Emit a TRANSFERRING event if the run's throttle allows it."""
        if total_bytes is None:
            total_bytes = run.state.transferred_bytes
        if run.throttle.should_update(total_bytes):
            self._emit(run, BackupPhase.TRANSFERRING)

    def _emit(
        self,
        run: _Run,
        phase: BackupPhase,
        total_files: int | None = None,
        current_file: str | None = None,
    ) -> None:
        """Send one event to the sink; sink exceptions are logged, not raised."""
        if run.sink is None:
            return
        files, total_bytes, current = run.state.snapshot()
        progress = BackupProgress(
            phase=phase,
            transferred_files=files,
            transferred_bytes=total_bytes,
            elapsed_seconds=run.throttle.elapsed_seconds(),
            total_files=total_files,
            current_file=current_file or current,
            transfer_speed=run.throttle.calculate_speed(total_bytes),
        )
        try:
            run.sink(progress)
        except Exception:
            logger.exception("Exception in progress sink")


def backup(
    session: Session,
    remote_root: str,
    local_root: str | os.PathLike[str],
    progress_sink: ProgressSink | None = None,
    cancel: CancellationToken | None = None,
) -> BackupResult:
    """Run :meth:`BackupEngine.backup` with default settings."""
    return BackupEngine().backup(session, remote_root, local_root, progress_sink, cancel)
