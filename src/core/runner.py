"""Long-lived workflow loops.

One asyncio task per workflow id. Each iteration runs the blocking pipeline
in a worker thread, then sleeps for the workflow interval. A failed iteration
is logged and the loop moves on to the next tick.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
from contextlib import suppress
from typing import Callable, Dict, List, Optional

from core.definitions import WorkflowDefinition
from core.models import WorkflowExecutionResult
from core.ports import WorkflowStore

LOGGER = logging.getLogger(__name__)

Executor = Callable[[WorkflowDefinition], WorkflowExecutionResult]


class WorkflowState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class WorkflowRunner:
    """Supervises per-workflow loops; at most one live loop per id."""

    def __init__(self, executor: Executor, store: Optional[WorkflowStore] = None) -> None:
        self._executor = executor
        self._store = store
        self._tasks: Dict[str, asyncio.Task] = {}
        self._states: Dict[str, WorkflowState] = {}
        # Cancelling a task does not stop a worker thread that is already
        # executing; this lock keeps a restarted loop from overlapping it.
        self._iteration_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # Start and stop await the old task before replacing it; two calls for
        # the same id must not interleave there.
        self._control_locks: Dict[str, asyncio.Lock] = {}

    def _iteration_lock(self, workflow_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._iteration_locks.setdefault(workflow_id, threading.Lock())

    def _control_lock(self, workflow_id: str) -> asyncio.Lock:
        return self._control_locks.setdefault(workflow_id, asyncio.Lock())

    async def _persist(self, method: str, *args: object) -> None:
        # SQLite writes block; keep them off the loop the other workflows share.
        if self._store is not None:
            await asyncio.to_thread(getattr(self._store, method), *args)

    def _execute_serialized(self, definition: WorkflowDefinition) -> WorkflowExecutionResult:
        with self._iteration_lock(definition.id):
            return self._executor(definition)

    async def _run_iteration(self, definition: WorkflowDefinition) -> WorkflowExecutionResult:
        result = await asyncio.to_thread(self._execute_serialized, definition)
        await self._persist("mark_run", definition.id, result.timestamp)
        return result

    async def _loop(self, definition: WorkflowDefinition) -> None:
        self._states[definition.id] = WorkflowState.RUNNING
        try:
            while True:
                try:
                    LOGGER.debug("Executing workflow %s", definition.name)
                    result = await self._run_iteration(definition)
                    if result.success:
                        LOGGER.info(
                            "Workflow %s ok: %s (%s messages)",
                            definition.name,
                            result.message,
                            result.processed_message_count,
                        )
                    else:
                        LOGGER.warning("Workflow %s failed: %s", definition.name, result.error)
                except Exception:
                    LOGGER.exception("Error in workflow %s", definition.name)
                await asyncio.sleep(definition.interval_seconds)
        except asyncio.CancelledError:
            LOGGER.info("Workflow %s was cancelled", definition.name)
            raise

    async def start_workflow(self, definition: WorkflowDefinition) -> None:
        """Start (or restart) the loop for a definition."""

        async with self._control_lock(definition.id):
            await self._cancel(definition.id)
            self._states[definition.id] = WorkflowState.STARTING
            LOGGER.info("Starting workflow %s (%s every %ss)", definition.name, definition.type.value, definition.interval_seconds)
            task = asyncio.create_task(self._loop(definition), name=f"workflow:{definition.id}")
            self._tasks[definition.id] = task
            await self._persist("set_running", definition.id, True)

    async def stop_workflow(self, workflow_id: str) -> None:
        """Cancel a loop; stopping an idle id is a no-op apart from persistence."""

        async with self._control_lock(workflow_id):
            await self._cancel(workflow_id)
            await self._persist("set_running", workflow_id, False)

    async def _cancel(self, workflow_id: str) -> None:
        task = self._tasks.pop(workflow_id, None)
        if task is None:
            self._states[workflow_id] = WorkflowState.STOPPED
            return
        LOGGER.info("Stopping workflow %s", workflow_id)
        self._states[workflow_id] = WorkflowState.STOPPING
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        self._states[workflow_id] = WorkflowState.STOPPED

    async def stop_all(self) -> None:
        for workflow_id in list(self._tasks):
            await self.stop_workflow(workflow_id)

    async def shutdown(self) -> None:
        """Cancel every loop without changing the persisted running flags.

        Used when the supervisor itself goes away, so the same workflows are
        restored on the next start.
        """

        tasks = list(self._tasks.items())
        self._tasks.clear()
        for _, task in tasks:
            task.cancel()
        for workflow_id, task in tasks:
            with suppress(asyncio.CancelledError):
                await task
            self._states[workflow_id] = WorkflowState.STOPPED
        # The next start may run on a new event loop.
        self._control_locks.clear()

    async def run_once(self, definition: WorkflowDefinition) -> WorkflowExecutionResult:
        """Execute one iteration out-of-band; the scheduled loop is untouched."""

        try:
            LOGGER.info("Running workflow once: %s", definition.name)
            return await self._run_iteration(definition)
        except Exception as exc:
            LOGGER.exception("Failed to run workflow %s once", definition.name)
            return WorkflowExecutionResult.failed(f"Failed to execute: {exc}", str(exc))

    def is_running(self, workflow_id: str) -> bool:
        task = self._tasks.get(workflow_id)
        return task is not None and not task.done()

    def state(self, workflow_id: str) -> WorkflowState:
        return self._states.get(workflow_id, WorkflowState.STOPPED)

    def running_ids(self) -> List[str]:
        return [workflow_id for workflow_id, task in self._tasks.items() if not task.done()]

    @property
    def running_count(self) -> int:
        return len(self.running_ids())
