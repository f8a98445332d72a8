"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any backend-specific types. A Message is created by a source,
replaced (never mutated) by a processor and handed to a destination.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping, Optional

EMPTY_ID_PREFIX = "empty_"
ERROR_ID_PREFIX = "error_"

STATUS_EMPTY = "empty"


def now_millis() -> int:
    """Return the current wall-clock time as epoch milliseconds."""

    return int(time.time() * 1000)


@dataclass(frozen=True)
class Message:
    """Standardized message produced by any source."""

    id: str
    sender: str
    recipient: str
    content: str
    timestamp: int
    metadata: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Freeze a private copy so callers holding the original dict cannot
        # change a message after it was created.
        frozen = MappingProxyType({str(k): str(v) for k, v in dict(self.metadata).items()})
        object.__setattr__(self, "metadata", frozen)

    @property
    def platform(self) -> str:
        return self.metadata.get("platform", "unknown")

    @property
    def is_empty(self) -> bool:
        return self.metadata.get("status") == STATUS_EMPTY

    def with_content(self, content: str, **metadata: str) -> "Message":
        """Return a derived copy with new content and merged metadata."""

        merged = dict(self.metadata)
        merged.update(metadata)
        return replace(self, content=content, metadata=merged)


def empty_message(platform: str, note: str = "No messages available") -> Message:
    """Return the sentinel used when a source has nothing to offer."""

    stamp = now_millis()
    return Message(
        id=f"{EMPTY_ID_PREFIX}{stamp}",
        sender="system",
        recipient="system",
        content=note,
        timestamp=stamp,
        metadata={"platform": platform, "status": STATUS_EMPTY},
    )


def error_message(
    reason: str,
    *,
    platform: str = "unknown",
    recipient: str = "system",
    source: Optional[Message] = None,
) -> Message:
    """Return a message whose content states a processing error."""

    stamp = now_millis()
    metadata = dict(source.metadata) if source is not None else {"platform": platform}
    metadata.update({"processed": "false", "error": reason})
    return Message(
        id=f"{ERROR_ID_PREFIX}{stamp}" if source is None else source.id,
        sender=source.sender if source is not None else "system",
        recipient=source.recipient if source is not None else recipient,
        content=f"Error: {reason}",
        timestamp=stamp,
        metadata=metadata,
    )


@dataclass(frozen=True)
class WorkflowExecutionResult:
    """Outcome of one workflow run; only last_run_at outlives it."""

    success: bool
    message: str
    processed_message_count: int
    timestamp: int
    error: Optional[str] = None

    @classmethod
    def ok(cls, message: str, processed_message_count: int) -> "WorkflowExecutionResult":
        return cls(True, message, processed_message_count, now_millis())

    @classmethod
    def failed(
        cls, message: str, error: Optional[str] = None, processed_message_count: int = 0
    ) -> "WorkflowExecutionResult":
        return cls(False, message, processed_message_count, now_millis(), error or message)
