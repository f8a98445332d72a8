"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for sources, processors, destinations,
storage and the supervisor's wake lock so that the core can be reused with
different backends.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Protocol, Sequence

from core.definitions import WorkflowDefinition
from core.models import Message


class MessageSource(Protocol):
    """Produces standardized messages; never raises, returns the empty sentinel."""

    def fetch_one(self) -> Message:
        ...

    def fetch_many(self, count: int) -> List[Message]:
        ...


class Processor(Protocol):
    """Transforms one message or reduces many to exactly one."""

    def process(self, message: Message) -> Message:
        ...

    def process_batch(self, messages: Sequence[Message]) -> Message:
        ...


class OutputFormatter(Protocol):
    """Renders messages into the payload a destination delivers."""

    def format_one(self, message: Message) -> str:
        ...

    def format_batch(self, messages: Sequence[Message]) -> str:
        ...


class MessageDestination(Protocol):
    """Delivers messages; failures are reported as False, not raised."""

    def send_one(self, message: Message) -> bool:
        ...

    def send_many(self, messages: Sequence[Message]) -> List[bool]:
        ...


class LanguageModel(Protocol):
    """Blocking completion call; raises LanguageModelError on failure."""

    def complete(self, prompt: str, timeout: float) -> str:
        ...


class CursorStore(Protocol):
    """Small key/value store sources use to remember what they consumed."""

    def get_cursor(self, key: str) -> Optional[str]:
        ...

    def set_cursor(self, key: str, value: str) -> None:
        ...


class WorkflowStore(CursorStore, Protocol):
    """Durable storage for workflow definitions and supervisor state."""

    def create(self, definition: WorkflowDefinition) -> None:
        ...

    def get(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        ...

    def update(self, definition: WorkflowDefinition) -> None:
        ...

    def delete(self, workflow_id: str) -> bool:
        ...

    def list(self) -> List[WorkflowDefinition]:
        ...

    def set_running(self, workflow_id: str, is_running: bool) -> None:
        ...

    def mark_run(self, workflow_id: str, timestamp: int) -> None:
        ...

    def enqueue_request(self, workflow_id: str, action: str) -> None:
        ...

    def drain_requests(self) -> Iterable[tuple[str, str]]:
        ...

    def get_state(self, key: str) -> Optional[str]:
        ...

    def set_state(self, key: str, value: str) -> None:
        ...


class WakeLock(Protocol):
    """Renewable lock that keeps the supervisor process from being suspended."""

    def acquire(self, lease_seconds: int) -> bool:
        ...

    def renew(self, lease_seconds: int) -> bool:
        ...

    def release(self) -> None:
        ...

    def is_held(self) -> bool:
        ...
