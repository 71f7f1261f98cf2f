"""In-process trigger for the recurring expiry sweep."""

from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class SweepScheduler:
    """Runs ``sweep`` every ``interval_seconds`` on a daemon thread.

    A failing sweep is logged and retried on the next tick; it never stops
    the schedule.
    """

    def __init__(self, sweep: Callable[[], int], interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._sweep = sweep
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="credence-expiry-sweep", daemon=True)
        self._thread.start()
        logger.info("Expiry sweep scheduled every %ss", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Expiry sweep schedule stopped")

    def run_once(self) -> int | None:
        try:
            return self._sweep()
        except Exception:
            logger.exception("Scheduled expiry sweep failed")
            return None

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()
