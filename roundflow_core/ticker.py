"""Cancellable periodic task on a daemon thread."""
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class Ticker:
    """
    Call ``fn`` every ``interval`` seconds until stopped.

    ``wake()`` runs the next call immediately instead of waiting out the
    interval. Exceptions from ``fn`` are logged and the ticker keeps going.
    """

    def __init__(self, name: str, interval: float, fn: Callable[[], None], *, run_immediately: bool = False):
        self.name = name
        self.interval = interval
        self._fn = fn
        self._run_immediately = run_immediately
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._wake.clear()
        if self._run_immediately:
            self._wake.set()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.debug(f"Ticker {self.name} started ({self.interval}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        self._wake.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        logger.debug(f"Ticker {self.name} stopped")

    def wake(self) -> None:
        self._wake.set()

    def _run(self) -> None:
        while not self._stop.is_set():
            self._wake.wait(timeout=self.interval)
            self._wake.clear()
            if self._stop.is_set():
                break
            try:
                self._fn()
            except Exception:
                logger.exception(f"Ticker {self.name} iteration failed")
