"""Cooperative cancellation token shared between a caller and the engine."""

from __future__ import annotations

import logging
import threading

logger = logging.getLogger(__name__)


class CancellationToken:
    """A one-way flag the caller sets and the engine polls.

    Setting the token never interrupts a running chunk copy; the engine
    notices it at its next safe point (directory entry, before each file)
    or while waiting out a retry backoff.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation (safe from any thread)."""
        if not self._event.is_set():
            logger.info("Cancellation requested")
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """True once :meth:`cancel` has been called."""
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds; return True early if cancelled."""
        return self._event.wait(timeout)
