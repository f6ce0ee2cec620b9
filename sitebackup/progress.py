"""Progress reporting primitives for SiteBackup.

- :class:`TransferState` holds the run counters (one writer, many readers).
- :class:`ProgressThrottle` decides when a new :class:`BackupProgress` is
  worth emitting.
- :class:`QueueProgressSink` hands progress events to another thread.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)

UPDATE_INTERVAL = 3.0                 # seconds between throttled updates
BYTE_THRESHOLD = 50 * 1024 * 1024     # or every 50 MB, whichever comes first

Clock = Callable[[], float]


class BackupPhase(Enum):
    """Phase label carried by each progress event."""

    STARTING = "starting"
    CHECKING_REMOTE = "checking_remote"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class BackupProgress:
    """One progress event emitted by the engine."""

    phase: BackupPhase
    transferred_files: int
    transferred_bytes: int
    elapsed_seconds: float
    total_files: Optional[int] = None
    current_file: Optional[str] = None
    transfer_speed: Optional[float] = None  # bytes per second


ProgressSink = Callable[[BackupProgress], None]


# ---------------------------------------------------------------------------
# TransferState
# ---------------------------------------------------------------------------


class TransferState:
    """Counters for one backup run.

    Only the engine writes; UI threads and pollers read through
    :meth:`snapshot` or the properties, all under the same lock so a
    reader never sees a torn update.
    """

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self.run_start_time = clock()
        self._transferred_files = 0
        self._transferred_bytes = 0
        self._retries = 0
        self._current_file: str | None = None

    def add_bytes(self, count: int) -> int:
        """Add *count* copied bytes and return the new total."""
        if count < 0:
            raise ValueError("transferred_bytes cannot decrease")
        with self._lock:
            self._transferred_bytes += count
            return self._transferred_bytes

    def file_done(self) -> int:
        """Count one completed file and return the new total."""
        with self._lock:
            self._transferred_files += 1
            return self._transferred_files

    def add_retries(self, count: int) -> None:
        with self._lock:
            self._retries += count

    def set_current_file(self, path: str | None) -> None:
        with self._lock:
            self._current_file = path

    @property
    def transferred_files(self) -> int:
        with self._lock:
            return self._transferred_files

    @property
    def transferred_bytes(self) -> int:
        with self._lock:
            return self._transferred_bytes

    @property
    def retries(self) -> int:
        with self._lock:
            return self._retries

    @property
    def current_file(self) -> str | None:
        with self._lock:
            return self._current_file

    def elapsed_seconds(self) -> float:
        return max(0.0, self._clock() - self.run_start_time)

    def snapshot(self) -> tuple[int, int, str | None]:
        """Return ``(transferred_files, transferred_bytes, current_file)`` atomically."""
        with self._lock:
            return self._transferred_files, self._transferred_bytes, self._current_file


# ---------------------------------------------------------------------------
# ProgressThrottle
# ---------------------------------------------------------------------------


class ProgressThrottle:
    """Rate-limits progress events by elapsed time and bytes copied.

    Create exactly one per run and pass it down the walk; a fresh instance
    per directory would reset both the interval and the speed baseline.
    """

    def __init__(
        self,
        interval: float = UPDATE_INTERVAL,
        byte_threshold: int = BYTE_THRESHOLD,
        clock: Clock = time.monotonic,
    ) -> None:
        self.interval = interval
        self.byte_threshold = byte_threshold
        self._clock = clock
        self._start_time = clock()
        self._last_update: float | None = None
        self._last_bytes = 0

    def should_update(self, current_bytes: int) -> bool:
        """Return True if an event should be emitted for *current_bytes*.

        The first call always returns True.  Afterwards True means either
        :attr:`interval` seconds or :attr:`byte_threshold` bytes have passed
        since the previous True, and resets both baselines.
        """
        now = self._clock()
        if self._last_update is not None:
            time_due = now - self._last_update >= self.interval
            bytes_due = current_bytes - self._last_bytes >= self.byte_threshold
            if not (time_due or bytes_due):
                return False
        self._last_update = now
        self._last_bytes = current_bytes
        return True

    def elapsed_seconds(self) -> float:
        """Seconds since the throttle (i.e. the run) started."""
        return max(0.0, self._clock() - self._start_time)

    def calculate_speed(self, current_bytes: int) -> float | None:
        """Average speed in bytes/second since the run started, or None."""
        elapsed = self.elapsed_seconds()
        if elapsed <= 0:
            return None
        return current_bytes / elapsed


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class QueueProgressSink:
    """Progress sink that forwards events to a :class:`queue.Queue`.

    Usage::

        sink = QueueProgressSink()
        # worker thread: engine.backup(..., progress_sink=sink, ...)
        # UI thread:     for event in sink.drain(): render(event)
    """

    def __init__(self, maxsize: int = 0) -> None:
        self.queue: queue.Queue[BackupProgress] = queue.Queue(maxsize=maxsize)

    def __call__(self, progress: BackupProgress) -> None:
        try:
            self.queue.put_nowait(progress)
        except queue.Full:
            # A slow consumer loses intermediate events, never the transfer.
            logger.debug("Progress queue full — dropping %s event", progress.phase.value)

    def drain(self) -> list[BackupProgress]:
        """Return every queued event without blocking."""
        events: list[BackupProgress] = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except queue.Empty:
                return events
