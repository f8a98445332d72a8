"""Background supervisor.

The supervisor owns a private asyncio loop running in a daemon thread. The
WorkflowRunner's per-workflow loops live on it, next to a keep-alive task that
writes a heartbeat, drains control requests queued by other processes and
renews the wake lock on a fixed cadence.

Public methods are safe to call from any thread except the supervisor's own
loop thread.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import suppress
from typing import Optional

from core.config import SupervisorConfig
from core.definitions import WorkflowDefinition
from core.models import WorkflowExecutionResult, now_millis
from core.ports import WakeLock, WorkflowStore
from core.runner import Executor, WorkflowRunner
from service.scheduler import IntervalScheduler

LOGGER = logging.getLogger(__name__)

DESIRED_STATE_KEY = "supervisor.desired_state"
HEARTBEAT_KEY = "supervisor.heartbeat"

STATE_RUNNING = "running"
STATE_STOPPED = "stopped"

_START_TIMEOUT_SECONDS = 10.0
_CALL_TIMEOUT_SECONDS = 30.0


class SupervisorNotRunning(RuntimeError):
    """Raised when a workflow operation needs a live supervisor loop."""


class WorkflowSupervisor:
    """Keeps running workflows alive and exposes the service control surface."""

    def __init__(
        self,
        store: WorkflowStore,
        executor: Executor,
        wake_lock: WakeLock,
        scheduler: Optional[IntervalScheduler] = None,
        config: SupervisorConfig = SupervisorConfig(),
    ) -> None:
        self._store = store
        self._executor = executor
        self._wake_lock = wake_lock
        self._scheduler = scheduler or IntervalScheduler(self.trigger)
        self._config = config
        self._runner = WorkflowRunner(executor, store)
        self._lock = threading.RLock()
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._ready = threading.Event()
        self._ticks = 0
        self._background: set[asyncio.Task] = set()

    @property
    def runner(self) -> WorkflowRunner:
        return self._runner

    @property
    def scheduler(self) -> IntervalScheduler:
        return self._scheduler

    # Lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Start the supervisor and restore every workflow marked running."""

        with self._lock:
            self._store.set_state(DESIRED_STATE_KEY, STATE_RUNNING)
            if self.is_running():
                LOGGER.debug("Supervisor is already running")
                return
            self._ready.clear()
            self._thread = threading.Thread(target=self._thread_main, name="supervisor", daemon=True)
            self._thread.start()
            if not self._ready.wait(_START_TIMEOUT_SECONDS):
                raise RuntimeError("Supervisor loop did not start in time")
        LOGGER.info("Supervisor started")

    def stop(self) -> None:
        """Explicit stop; persisted so the watchdog leaves it stopped."""

        self._store.set_state(DESIRED_STATE_KEY, STATE_STOPPED)
        self._shutdown()
        LOGGER.info("Supervisor stopped")

    def restart(self) -> None:
        self._shutdown()
        self.start()

    def is_running(self) -> bool:
        thread = self._thread
        loop = self._loop
        return thread is not None and thread.is_alive() and loop is not None and loop.is_running()

    def should_be_running(self) -> bool:
        return self._store.get_state(DESIRED_STATE_KEY) == STATE_RUNNING

    def _shutdown(self) -> None:
        with self._lock:
            loop, stop_event, thread = self._loop, self._stop_event, self._thread
            if loop is not None and stop_event is not None and loop.is_running():
                loop.call_soon_threadsafe(stop_event.set)
            if thread is not None:
                thread.join(timeout=_CALL_TIMEOUT_SECONDS)
            self._thread = None
            self._scheduler.cancel_all()
            self._wake_lock.release()

    def _thread_main(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        try:
            loop.run_until_complete(self._main())
        except Exception:
            LOGGER.exception("Supervisor loop crashed")
        finally:
            self._loop = None
            self._ready.set()
            loop.close()

    async def _main(self) -> None:
        self._stop_event = asyncio.Event()
        self._ticks = 0
        self._ready.set()
        self._write_heartbeat()
        await self._restore()
        keep_alive = asyncio.create_task(self._keep_alive(), name="supervisor:keep-alive")
        try:
            await self._stop_event.wait()
        finally:
            keep_alive.cancel()
            with suppress(asyncio.CancelledError):
                await keep_alive
            await self._runner.shutdown()

    async def _restore(self) -> None:
        restored = 0
        for definition in self._store.list():
            if not definition.is_running:
                continue
            try:
                await self._runner.start_workflow(definition)
                self._scheduler.schedule_interval(definition.id, definition.interval_seconds)
                restored += 1
            except Exception:
                LOGGER.exception("Failed to restore workflow %s", definition.name)
        if restored:
            self._wake_lock.acquire(self._config.wake_lock_lease_seconds)
        LOGGER.info("Restored %s running workflow(s)", restored)

    # Keep-alive --------------------------------------------------------

    async def _keep_alive(self) -> None:
        while True:
            await asyncio.sleep(self._config.tick_seconds)
            try:
                await self.tick()
            except Exception:
                LOGGER.exception("Supervisor tick failed")

    async def tick(self) -> None:
        """One keep-alive tick; runs on the supervisor loop."""

        self._ticks += 1
        self._write_heartbeat()
        for workflow_id, action in self._store.drain_requests():
            await self._handle_request(workflow_id, action)
        if self._ticks % self._config.wake_lock_renew_ticks == 0:
            self._refresh_wake_lock()

    def _write_heartbeat(self) -> None:
        self._store.set_state(HEARTBEAT_KEY, str(now_millis()))

    async def _handle_request(self, workflow_id: str, action: str) -> None:
        LOGGER.info("Control request: %s %s", action, workflow_id)
        try:
            if action == "start":
                await self._start_workflow(workflow_id)
            elif action == "stop":
                await self._stop_workflow(workflow_id)
            elif action == "run_once":
                # Do not hold up the tick while the workflow runs.
                definition = self._definition(workflow_id)
                task = asyncio.create_task(self._runner.run_once(definition), name=f"run-once:{workflow_id}")
                self._background.add(task)
                task.add_done_callback(self._background.discard)
            else:
                LOGGER.warning("Ignoring unknown control action %s", action)
        except KeyError:
            LOGGER.warning("Control request for unknown workflow %s", workflow_id)

    def _refresh_wake_lock(self) -> None:
        lease = self._config.wake_lock_lease_seconds
        if self._runner.running_count:
            if not self._wake_lock.renew(lease):
                LOGGER.info("Wake lock was lost; re-acquiring")
                self._wake_lock.acquire(lease)
        elif self._wake_lock.is_held():
            self._wake_lock.release()

    # Workflow operations -----------------------------------------------

    def _definition(self, workflow_id: str) -> WorkflowDefinition:
        definition = self._store.get(workflow_id)
        if definition is None:
            raise KeyError(workflow_id)
        return definition

    async def _start_workflow(self, workflow_id: str) -> None:
        definition = self._definition(workflow_id)
        await self._runner.start_workflow(definition)
        self._scheduler.schedule_interval(workflow_id, definition.interval_seconds)
        if not self._wake_lock.is_held():
            self._wake_lock.acquire(self._config.wake_lock_lease_seconds)

    async def _stop_workflow(self, workflow_id: str) -> None:
        self._definition(workflow_id)
        await self._runner.stop_workflow(workflow_id)
        self._scheduler.cancel_interval(workflow_id)
        if not self._runner.running_count:
            self._wake_lock.release()

    async def _run_once(self, workflow_id: str) -> WorkflowExecutionResult:
        return await self._runner.run_once(self._definition(workflow_id))

    def _call(self, coro, timeout: Optional[float] = _CALL_TIMEOUT_SECONDS):
        loop = self._loop
        if loop is None or not self.is_running():
            coro.close()
            raise SupervisorNotRunning("Supervisor is not running")
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout)

    def start_workflow(self, workflow_id: str) -> None:
        self._call(self._start_workflow(workflow_id))

    def stop_workflow(self, workflow_id: str) -> None:
        self._call(self._stop_workflow(workflow_id))

    def run_once(self, workflow_id: str) -> WorkflowExecutionResult:
        return self._call(self._run_once(workflow_id), timeout=None)

    def schedule_interval(self, workflow_id: str, seconds: float) -> None:
        self._scheduler.schedule_interval(workflow_id, seconds)

    def cancel_interval(self, workflow_id: str) -> None:
        self._scheduler.cancel_interval(workflow_id)

    def trigger(self, workflow_id: str) -> None:
        """Interval alarm callback: make sure the workflow actually runs."""

        if not self.should_be_running():
            return
        if not self.is_running():
            # Starting restores every running workflow, this one included.
            self.start()
            return

        definition = self._store.get(workflow_id)
        if definition is None or not definition.is_running:
            self.cancel_interval(workflow_id)
            return

        if not self._runner.is_running(workflow_id):
            LOGGER.warning("Loop for workflow %s is gone; restarting it", definition.name)
            self.start_workflow(workflow_id)
            return

        stale_after_ms = (definition.interval_seconds + self._config.heartbeat_stale_seconds) * 1000
        last_run = definition.last_run_at or definition.created_at
        if now_millis() - last_run > stale_after_ms:
            LOGGER.warning("Workflow %s missed its interval; running it from the alarm", definition.name)
            self.run_once(workflow_id)
