"""Lease-file wake lock.

The supervisor holds a lease while workflows run and renews it on a fixed
cadence. Other processes (the CLI status command, the watchdog of a second
instance) read the lease to tell whether a live supervisor owns it.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

LOGGER = logging.getLogger(__name__)


def read_lease(path: str | Path) -> Optional[Dict[str, Any]]:
    """Return the lease document, or None if missing or unreadable."""

    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError):
        LOGGER.warning("Unreadable wake lock lease at %s", path)
        return None


def lease_is_active(lease: Optional[Dict[str, Any]], now: Optional[float] = None) -> bool:
    if not lease:
        return False
    return float(lease.get("expires_at", 0)) > (time.time() if now is None else now)


class LeaseWakeLock:
    """Renewable lease stored as a small JSON file."""

    def __init__(self, path: str | Path, owner: str = "courier-supervisor") -> None:
        self._path = Path(path)
        self._owner = owner
        self._lock = threading.Lock()
        self._held = False

    @property
    def path(self) -> Path:
        return self._path

    def _owned_by_other(self) -> bool:
        lease = read_lease(self._path)
        if not lease_is_active(lease):
            return False
        return lease.get("owner") != self._owner or int(lease.get("pid", -1)) != os.getpid()

    def _write(self, lease_seconds: int) -> None:
        now = time.time()
        document = {
            "owner": self._owner,
            "pid": os.getpid(),
            "acquired_at": now,
            "expires_at": now + lease_seconds,
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(document), encoding="utf-8")
        os.replace(tmp, self._path)

    def acquire(self, lease_seconds: int) -> bool:
        with self._lock:
            if self._owned_by_other():
                LOGGER.warning("Wake lock %s is held by another live process", self._path)
                return False
            self._write(lease_seconds)
            self._held = True
            LOGGER.debug("Wake lock acquired for %ss", lease_seconds)
            return True

    def renew(self, lease_seconds: int) -> bool:
        """Extend the lease; returns False if it was lost to another owner."""

        with self._lock:
            if not self._held or self._owned_by_other():
                self._held = False
                return False
            self._write(lease_seconds)
            return True

    def release(self) -> None:
        with self._lock:
            if not self._held:
                return
            self._held = False
            if not self._owned_by_other():
                self._path.unlink(missing_ok=True)
            LOGGER.debug("Wake lock released")

    def is_held(self) -> bool:
        with self._lock:
            return self._held and lease_is_active(read_lease(self._path))
