"""
Automatic sync scheduling.

Runs SyncManager.sync() on a background thread at a fixed interval.
trigger() wakes the thread early, e.g. when connectivity is restored;
the manager's re-entrancy guard keeps this safe alongside manual passes.
"""

import logging
import threading
from typing import Optional

from fieldsync.sync.manager import SyncManager

logger = logging.getLogger(__name__)


class AutoSync:
    """Periodic background sync driver."""

    def __init__(self, manager: SyncManager, interval: float = 30.0):
        if interval <= 0:
            raise ValueError("Sync interval must be positive")
        self.manager = manager
        self.interval = interval
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the timer. The first pass runs after one interval unless triggered."""
        if self.running:
            return
        # Each thread gets its own events
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            args=(self._stop_event, self._wake_event),
            name="fieldsync-autosync",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Auto-sync started (every {self.interval:g}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the timer, waiting for an in-flight pass to finish."""
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        self._wake_event.set()
        thread.join(timeout)
        if thread.is_alive():
            logger.warning("Auto-sync stop timed out; the current pass is still running")
            return
        self._thread = None
        logger.info("Auto-sync stopped")

    def trigger(self) -> None:
        """Run a pass now instead of waiting for the next tick."""
        self._wake_event.set()

    def _run(self, stop_event: threading.Event, wake_event: threading.Event) -> None:
        while not stop_event.is_set():
            wake_event.wait(self.interval)
            wake_event.clear()
            if stop_event.is_set():
                break
            try:
                self.manager.sync()
            except Exception as e:
                logger.error(f"Automatic sync pass failed: {e}")
