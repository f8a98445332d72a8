from __future__ import annotations

import time
from pathlib import Path

import pytest

from adapters.sqlite_store import SQLiteWorkflowStore
from core.config import SupervisorConfig
from core.definitions import EmailToTelegramConfig, WorkflowDefinition
from core.models import WorkflowExecutionResult, now_millis
from service.supervisor import (
    DESIRED_STATE_KEY,
    HEARTBEAT_KEY,
    STATE_RUNNING,
    STATE_STOPPED,
    SupervisorNotRunning,
    WorkflowSupervisor,
)

FAST = SupervisorConfig(tick_seconds=0.02, wake_lock_renew_ticks=1, wake_lock_lease_seconds=60)


class FakeWakeLock:
    def __init__(self) -> None:
        self.held = False
        self.acquired = 0

    def acquire(self, lease_seconds: int) -> bool:
        self.held = True
        self.acquired += 1
        return True

    def renew(self, lease_seconds: int) -> bool:
        return self.held

    def release(self) -> None:
        self.held = False

    def is_held(self) -> bool:
        return self.held


class CountingExecutor:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def __call__(self, definition: WorkflowDefinition) -> WorkflowExecutionResult:
        self.calls.append(definition.id)
        return WorkflowExecutionResult.ok("done", 1)


def _wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def store(tmp_path: Path) -> SQLiteWorkflowStore:
    store = SQLiteWorkflowStore(str(tmp_path / "courier.db"))
    store.init_db()
    return store


def _add(store: SQLiteWorkflowStore, running: bool = False) -> WorkflowDefinition:
    definition = WorkflowDefinition.new("digest", EmailToTelegramConfig(telegram_chat_id="42"), interval_seconds=60)
    store.create(definition)
    if running:
        store.set_running(definition.id, True)
    return definition


def test_start_restores_running_workflows(store: SQLiteWorkflowStore) -> None:
    running = _add(store, running=True)
    idle = _add(store)
    executor = CountingExecutor()
    wake_lock = FakeWakeLock()
    supervisor = WorkflowSupervisor(store, executor, wake_lock, config=FAST)

    supervisor.start()
    try:
        assert supervisor.is_running()
        assert _wait_for(lambda: executor.calls == [running.id])
        assert supervisor.runner.is_running(running.id)
        assert not supervisor.runner.is_running(idle.id)
        assert supervisor.scheduler.scheduled_ids() == [running.id]
        assert wake_lock.held
        assert store.get_state(HEARTBEAT_KEY) is not None
    finally:
        supervisor.stop()

    assert not supervisor.is_running()
    assert supervisor.scheduler.scheduled_ids() == []
    assert not wake_lock.held
    # Shutting the supervisor down leaves the workflow marked for restore.
    assert store.get(running.id).is_running is True


def test_stop_is_persisted_for_the_watchdog(store: SQLiteWorkflowStore) -> None:
    supervisor = WorkflowSupervisor(store, CountingExecutor(), FakeWakeLock(), config=FAST)
    supervisor.start()
    assert store.get_state(DESIRED_STATE_KEY) == STATE_RUNNING
    assert supervisor.should_be_running()

    supervisor.stop()
    assert store.get_state(DESIRED_STATE_KEY) == STATE_STOPPED
    assert not supervisor.should_be_running()


def test_tick_applies_queued_control_requests(store: SQLiteWorkflowStore) -> None:
    definition = _add(store)
    executor = CountingExecutor()
    wake_lock = FakeWakeLock()
    supervisor = WorkflowSupervisor(store, executor, wake_lock, config=FAST)
    supervisor.start()
    try:
        store.enqueue_request(definition.id, "start")
        assert _wait_for(lambda: store.get(definition.id).is_running)
        assert _wait_for(lambda: supervisor.runner.is_running(definition.id))
        assert wake_lock.held

        store.enqueue_request(definition.id, "run_once")
        assert _wait_for(lambda: len(executor.calls) >= 2)

        store.enqueue_request("missing", "start")
        store.enqueue_request(definition.id, "stop")
        assert _wait_for(lambda: not store.get(definition.id).is_running)
        assert _wait_for(lambda: not wake_lock.held)
        assert supervisor.scheduler.scheduled_ids() == []
    finally:
        supervisor.stop()


def test_workflow_operations_need_a_live_supervisor(store: SQLiteWorkflowStore) -> None:
    definition = _add(store)
    supervisor = WorkflowSupervisor(store, CountingExecutor(), FakeWakeLock(), config=FAST)
    with pytest.raises(SupervisorNotRunning):
        supervisor.start_workflow(definition.id)


def test_trigger_is_idle_after_explicit_stop(store: SQLiteWorkflowStore) -> None:
    definition = _add(store, running=True)
    store.set_state(DESIRED_STATE_KEY, STATE_STOPPED)
    executor = CountingExecutor()
    supervisor = WorkflowSupervisor(store, executor, FakeWakeLock(), config=FAST)

    supervisor.trigger(definition.id)

    assert not supervisor.is_running()
    assert executor.calls == []


def test_trigger_runs_a_workflow_that_missed_its_interval(store: SQLiteWorkflowStore) -> None:
    definition = _add(store, running=True)
    executor = CountingExecutor()
    supervisor = WorkflowSupervisor(store, executor, FakeWakeLock(), config=FAST)
    supervisor.start()
    try:
        assert _wait_for(lambda: store.get(definition.id).last_run_at is not None)

        # A recent run means the alarm has nothing to do.
        supervisor.trigger(definition.id)
        assert len(executor.calls) == 1

        store.mark_run(definition.id, now_millis() - 10 * 60 * 1000)
        supervisor.trigger(definition.id)
        assert len(executor.calls) == 2
    finally:
        supervisor.stop()


def test_trigger_cancels_alarms_for_stopped_workflows(store: SQLiteWorkflowStore) -> None:
    definition = _add(store)
    supervisor = WorkflowSupervisor(store, CountingExecutor(), FakeWakeLock(), config=FAST)
    supervisor.start()
    try:
        supervisor.schedule_interval(definition.id, 60)
        supervisor.schedule_interval("deleted", 60)

        supervisor.trigger(definition.id)
        supervisor.trigger("deleted")

        assert supervisor.scheduler.scheduled_ids() == []
    finally:
        supervisor.stop()
