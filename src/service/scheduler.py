"""Per-workflow interval alarms.

Each alarm is a daemon thread that calls back with the workflow id every
interval. It is a second execution path, independent of the supervisor's
asyncio loops.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List

from core.definitions import MIN_INTERVAL_SECONDS
from core.errors import ConfigurationError

LOGGER = logging.getLogger(__name__)


class _Alarm:
    def __init__(self, workflow_id: str, interval: float, callback: Callable[[str], None]) -> None:
        self.workflow_id = workflow_id
        self.interval = interval
        self._callback = callback
        self._stopped = threading.Event()
        self.thread = threading.Thread(target=self._run, name=f"alarm:{workflow_id}", daemon=True)

    def start(self) -> None:
        self.thread.start()

    def cancel(self) -> None:
        self._stopped.set()

    def _run(self) -> None:
        while not self._stopped.wait(self.interval):
            try:
                self._callback(self.workflow_id)
            except Exception:
                LOGGER.exception("Alarm callback failed for workflow %s", self.workflow_id)


class IntervalScheduler:
    """Repeating alarms keyed by workflow id; at most one per id."""

    def __init__(self, callback: Callable[[str], None], min_interval: float = MIN_INTERVAL_SECONDS) -> None:
        self._callback = callback
        self._min_interval = min_interval
        self._alarms: Dict[str, _Alarm] = {}
        self._lock = threading.Lock()

    def schedule_interval(self, workflow_id: str, seconds: float) -> None:
        """Schedule (or reschedule) the alarm for a workflow."""

        if seconds < self._min_interval:
            raise ConfigurationError(f"Alarm interval must be at least {self._min_interval}s (got {seconds})")
        alarm = _Alarm(workflow_id, seconds, self._callback)
        with self._lock:
            previous = self._alarms.pop(workflow_id, None)
            if previous is not None:
                previous.cancel()
            self._alarms[workflow_id] = alarm
        alarm.start()
        LOGGER.info("Scheduled alarm for workflow %s every %ss", workflow_id, seconds)

    def cancel_interval(self, workflow_id: str) -> bool:
        with self._lock:
            alarm = self._alarms.pop(workflow_id, None)
        if alarm is None:
            return False
        alarm.cancel()
        LOGGER.info("Cancelled alarm for workflow %s", workflow_id)
        return True

    def cancel_all(self) -> None:
        with self._lock:
            alarms = list(self._alarms.values())
            self._alarms.clear()
        for alarm in alarms:
            alarm.cancel()

    def scheduled_ids(self) -> List[str]:
        with self._lock:
            return list(self._alarms)

    def interval_for(self, workflow_id: str) -> float | None:
        with self._lock:
            alarm = self._alarms.get(workflow_id)
        return alarm.interval if alarm else None
