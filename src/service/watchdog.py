"""Supervisor watchdog.

Periodically checks whether the supervisor should be running and restarts it
if it died. An explicit stop is persisted by the supervisor, so the watchdog
never undoes it.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol

LOGGER = logging.getLogger(__name__)


class Supervised(Protocol):
    def is_running(self) -> bool:
        ...

    def should_be_running(self) -> bool:
        ...

    def start(self) -> None:
        ...


class Watchdog:
    def __init__(
        self,
        supervisor: Supervised,
        interval_seconds: float = 60.0,
        initial_delay_seconds: float = 30.0,
    ) -> None:
        self._supervisor = supervisor
        self._interval = interval_seconds
        self._initial_delay = initial_delay_seconds
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.restarts = 0

    def check_once(self) -> bool:
        """Restart the supervisor if needed; returns True when it restarted it."""

        if not self._supervisor.should_be_running():
            LOGGER.debug("Supervisor was stopped explicitly; watchdog idle")
            return False
        if self._supervisor.is_running():
            return False
        LOGGER.warning("Supervisor is not running; restarting it")
        self._supervisor.start()
        self.restarts += 1
        return True

    def _run(self) -> None:
        delay = self._initial_delay
        while not self._stopped.wait(delay):
            try:
                self.check_once()
                delay = self._interval
            except Exception:
                LOGGER.exception("Watchdog check failed")
                delay = self._interval / 2

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            LOGGER.warning("Watchdog is already running")
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, name="watchdog", daemon=True)
        self._thread.start()
        LOGGER.info("Watchdog started (interval: %ss)", self._interval)

    def stop(self) -> None:
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout=10)
            self._thread = None
        LOGGER.info("Watchdog stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
