from __future__ import annotations

from pathlib import Path

import pytest

import app
from adapters.sqlite_store import SQLiteWorkflowStore
from core.definitions import EmailToTelegramConfig, WorkflowDefinition
from core.models import WorkflowExecutionResult


@pytest.fixture
def store(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> SQLiteWorkflowStore:
    store = SQLiteWorkflowStore(str(tmp_path / "courier.db"))
    store.init_db()
    monkeypatch.setattr(app, "_store", lambda: store)
    monkeypatch.setattr(app, "_configure_logging", lambda: None)
    return store


def _add(store: SQLiteWorkflowStore) -> WorkflowDefinition:
    definition = WorkflowDefinition.new("digest", EmailToTelegramConfig(telegram_chat_id="42"), interval_seconds=60)
    store.create(definition)
    return definition


def test_run_once_is_handed_to_a_live_supervisor(store: SQLiteWorkflowStore, monkeypatch: pytest.MonkeyPatch) -> None:
    definition = _add(store)
    monkeypatch.setattr(app, "_supervisor_alive", lambda s: True)

    def no_local_executor(s):
        raise AssertionError("a live supervisor owns the run")

    def supervisor_runs(seconds: float) -> None:
        assert store.drain_requests() == [(definition.id, "run_once")]
        store.mark_run(definition.id, 123)

    monkeypatch.setattr(app, "_executor", no_local_executor)
    monkeypatch.setattr(app.time, "sleep", supervisor_runs)

    app.main(["run-once", definition.id])

    assert store.get(definition.id).last_run_at == 123


def test_run_once_without_supervisor_goes_through_the_runner(
    store: SQLiteWorkflowStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    definition = _add(store)
    executed: list[str] = []

    def executor(d: WorkflowDefinition) -> WorkflowExecutionResult:
        executed.append(d.id)
        return WorkflowExecutionResult.ok("Processed 1 messages", 1)

    monkeypatch.setattr(app, "_supervisor_alive", lambda s: False)
    monkeypatch.setattr(app, "_executor", lambda s: executor)

    app.main(["run-once", definition.id])

    assert executed == [definition.id]
    assert store.get(definition.id).last_run_at is not None
    assert store.drain_requests() == []
