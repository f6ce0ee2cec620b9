"""Exponential-backoff retry for individual file operations."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from sitebackup.cancellation import CancellationToken
from sitebackup.errors import CancelledByUser, classify

logger = logging.getLogger(__name__)

T = TypeVar("T")

_INITIAL_INTERVAL = 1.0   # seconds
_MULTIPLIER = 2.0
_MAX_INTERVAL = 60.0      # seconds
_MAX_ELAPSED = 300.0      # total retry budget per operation
_JITTER = 0.1             # ±10 %


@dataclass
class RetryRecord:
    """What happened during one :meth:`RetryPolicy.call`."""

    attempts: int = 0
    delays: list[float] = field(default_factory=list)

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)


class RetryPolicy:
    """Retries transient failures with exponential backoff and jitter.

    Applied per file attempt: one flaky file is retried on its own and
    never restarts the walk.  Only :attr:`BackupError.is_transient` kinds
    (connection, timeout) are retried; everything else is raised on the
    first failure.
    """

    def __init__(
        self,
        initial_interval: float = _INITIAL_INTERVAL,
        multiplier: float = _MULTIPLIER,
        max_interval: float = _MAX_INTERVAL,
        max_elapsed: float = _MAX_ELAPSED,
        jitter: float = _JITTER,
        sleep: Optional[Callable[[float], object]] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        """Initialise the policy.

        Args:
            initial_interval: Delay before the first retry, in seconds.
            multiplier: Growth factor applied per retry.
            max_interval: Cap on a single delay (before jitter).
            max_elapsed: Total seconds a single call may spend retrying.
                A retry whose delay would overrun it is not attempted.
            jitter: Relative jitter; 0.1 means each delay is scaled by a
                random factor in ``[0.9, 1.1]``.
            sleep: Override for waiting between attempts (tests).  When
                None, waits on the cancellation token if one is passed to
                :meth:`call`, else ``time.sleep``.
            clock: Monotonic clock used for the retry budget.
            rng: Random source for jitter.
        """
        if initial_interval < 0 or multiplier < 1 or max_interval < 0 or max_elapsed < 0:
            raise ValueError("Retry intervals must be non-negative and multiplier >= 1")
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        self.initial_interval = initial_interval
        self.multiplier = multiplier
        self.max_interval = max_interval
        self.max_elapsed = max_elapsed
        self.jitter = jitter
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()

    def base_interval(self, retry_number: int) -> float:
        """Un-jittered delay before retry *retry_number* (1-based)."""
        interval = self.initial_interval * (self.multiplier ** (retry_number - 1))
        return min(interval, self.max_interval)

    def next_interval(self, retry_number: int) -> float:
        """Jittered delay before retry *retry_number* (1-based)."""
        base = self.base_interval(retry_number)
        return base * self._rng.uniform(1 - self.jitter, 1 + self.jitter)

    def call(
        self,
        fn: Callable[[], T],
        label: str = "",
        cancel: CancellationToken | None = None,
        record: RetryRecord | None = None,
    ) -> T:
        """Run *fn* until it succeeds or a non-retryable failure occurs.

        Raises:
            BackupError: The classified final failure, with ``attempts`` set.
            CancelledByUser: If *cancel* is set while waiting to retry.
        """
        record = record if record is not None else RetryRecord()
        started = self._clock()

        while True:
            record.attempts += 1
            try:
                return fn()
            except Exception as exc:
                error = classify(exc, label)
                error.attempts = record.attempts
                if not error.is_transient:
                    raise error

                delay = self.next_interval(record.attempts)
                spent = self._clock() - started
                if spent + delay > self.max_elapsed:
                    logger.warning(
                        "Giving up on %s after %d attempt(s) (%.1fs spent): %s",
                        label or "operation",
                        record.attempts,
                        spent,
                        error,
                    )
                    raise error

                logger.warning(
                    "Attempt %d for %s failed (%s) — retrying in %.2fs",
                    record.attempts,
                    label or "operation",
                    error.kind.name,
                    delay,
                )
                record.delays.append(delay)
                if self._wait(delay, cancel):
                    raise CancelledByUser() from exc

    def _wait(self, delay: float, cancel: CancellationToken | None) -> bool:
        """Wait *delay* seconds; return True if cancellation interrupted it."""
        if self._sleep is not None:
            self._sleep(delay)
            return cancel is not None and cancel.cancelled
        if cancel is not None:
            return cancel.wait(delay)
        time.sleep(delay)
        return False
