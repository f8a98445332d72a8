"""SQLite storage adapter.

Implements the WorkflowStore and CursorStore ports on a single SQLite file.
The supervisor, the CLI and the sources all open the same database, so every
operation uses its own short-lived connection.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from typing import Iterator, List, Optional

from core.definitions import WorkflowDefinition

CONTROL_ACTIONS = ("start", "stop", "run_once")


class SQLiteWorkflowStore:
    """Thin SQLite wrapper that satisfies the WorkflowStore contract."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - workflows: one JSON document per workflow definition
        - cursors: per-source resume points (e.g. Telegram update offsets)
        - control_requests: start/stop/run_once requests queued by other processes
        - service_state: supervisor key/value state (desired state, heartbeat)
        """

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    document TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cursors (
                    cursor_key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            # Append-only queue drained by the supervisor's keep-alive tick.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS control_requests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workflow_id TEXT NOT NULL,
                    action TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS service_state (
                    state_key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

    @staticmethod
    def _dump(definition: WorkflowDefinition) -> str:
        return json.dumps(definition.to_dict(), sort_keys=True)

    @staticmethod
    def _load(document: str) -> WorkflowDefinition:
        return WorkflowDefinition.from_dict(json.loads(document))

    def create(self, definition: WorkflowDefinition) -> None:
        """Insert a new definition; raises KeyError if the id exists."""

        with self._connect() as conn:
            try:
                conn.execute(
                    "INSERT INTO workflows (id, document, created_at) VALUES (?, ?, ?)",
                    (definition.id, self._dump(definition), definition.created_at),
                )
            except sqlite3.IntegrityError as exc:
                raise KeyError(definition.id) from exc

    def get(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        with self._connect() as conn:
            row = conn.execute("SELECT document FROM workflows WHERE id = ?", (workflow_id,)).fetchone()
        return self._load(row["document"]) if row else None

    def update(self, definition: WorkflowDefinition) -> None:
        """Replace a stored definition; raises KeyError if it does not exist."""

        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE workflows SET document = ? WHERE id = ?",
                (self._dump(definition), definition.id),
            )
            if cur.rowcount == 0:
                raise KeyError(definition.id)

    def delete(self, workflow_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM workflows WHERE id = ?", (workflow_id,))
            return cur.rowcount > 0

    def list(self) -> List[WorkflowDefinition]:
        with self._connect() as conn:
            rows = conn.execute("SELECT document FROM workflows ORDER BY created_at, id").fetchall()
        return [self._load(row["document"]) for row in rows]

    def _patch(self, workflow_id: str, **changes: object) -> None:
        # Read and write inside one transaction so concurrent patches of
        # different fields do not overwrite each other.
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT document FROM workflows WHERE id = ?", (workflow_id,)).fetchone()
            if row is None:
                raise KeyError(workflow_id)
            updated = replace(self._load(row["document"]), **changes)
            conn.execute("UPDATE workflows SET document = ? WHERE id = ?", (self._dump(updated), workflow_id))

    def set_running(self, workflow_id: str, is_running: bool) -> None:
        self._patch(workflow_id, is_running=is_running)

    def mark_run(self, workflow_id: str, timestamp: int) -> None:
        self._patch(workflow_id, last_run_at=timestamp)

    def get_cursor(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM cursors WHERE cursor_key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_cursor(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO cursors (cursor_key, value) VALUES (?, ?)
                ON CONFLICT(cursor_key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )

    def enqueue_request(self, workflow_id: str, action: str) -> None:
        if action not in CONTROL_ACTIONS:
            raise ValueError(f"Unknown control action: {action}")
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO control_requests (workflow_id, action) VALUES (?, ?)",
                (workflow_id, action),
            )

    def drain_requests(self) -> List[tuple[str, str]]:
        """Remove and return every queued request, oldest first."""

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute("SELECT id, workflow_id, action FROM control_requests ORDER BY id").fetchall()
            if rows:
                conn.execute("DELETE FROM control_requests WHERE id <= ?", (rows[-1]["id"],))
        return [(row["workflow_id"], row["action"]) for row in rows]

    def get_state(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM service_state WHERE state_key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO service_state (state_key, value) VALUES (?, ?)
                ON CONFLICT(state_key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )
