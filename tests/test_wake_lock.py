from __future__ import annotations

import json
import os
import time
from pathlib import Path

from adapters.wake_lock import LeaseWakeLock, lease_is_active, read_lease


def test_acquire_renew_release(tmp_path: Path) -> None:
    path = tmp_path / "run" / "supervisor.lease"
    lock = LeaseWakeLock(path)

    assert lock.acquire(60) is True
    assert lock.is_held() is True
    lease = read_lease(path)
    assert lease["pid"] == os.getpid()
    assert lease_is_active(lease)

    assert lock.renew(120) is True
    assert read_lease(path)["expires_at"] > lease["expires_at"]

    lock.release()
    assert lock.is_held() is False
    assert read_lease(path) is None


def test_renew_without_acquire_fails(tmp_path: Path) -> None:
    assert LeaseWakeLock(tmp_path / "lease").renew(60) is False


def test_live_lease_of_another_owner_blocks(tmp_path: Path) -> None:
    path = tmp_path / "lease"
    path.write_text(json.dumps({"owner": "other", "pid": 1, "expires_at": time.time() + 60}))
    lock = LeaseWakeLock(path)
    assert lock.acquire(60) is False

    path.write_text(json.dumps({"owner": "other", "pid": 1, "expires_at": time.time() - 1}))
    assert lock.acquire(60) is True


def test_unreadable_lease_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "lease"
    path.write_text("not json")
    assert read_lease(path) is None
    assert lease_is_active(None) is False
