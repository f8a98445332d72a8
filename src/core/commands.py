"""Command layer wrapping processing work with execute/undo and history.

Only processing is wrapped here. Delivery to a destination is irreversible
and happens outside of commands, so undo never tries to take a send back.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

from core.consolidation import consolidate
from core.models import Message
from core.ports import Processor

LOGGER = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 100


class Command(Protocol):
    def execute(self) -> bool:
        ...

    def undo(self) -> bool:
        ...


def _succeeded(message: Message) -> bool:
    return message.metadata.get("processed") == "true"


class ProcessMessageCommand:
    """Process a single message through a processor."""

    def __init__(self, message: Message, processor: Processor) -> None:
        self._message = message
        self._processor = processor
        self._snapshot: Optional[Message] = None
        self._result: Optional[str] = None
        self.was_executed = False

    @property
    def message(self) -> Message:
        return self._message

    @property
    def snapshot(self) -> Optional[Message]:
        return self._snapshot

    @property
    def result(self) -> Optional[str]:
        return self._result

    def execute(self) -> bool:
        if self.was_executed:
            LOGGER.warning("Command already executed for message %s", self._message.id)
            return False

        self._snapshot = self._message
        processed = self._processor.process(self._message)
        if not _succeeded(processed):
            # Left unexecuted so the same command can be retried.
            self._snapshot = None
            self._result = None
            return False
        self._result = processed.content
        self.was_executed = True
        return True

    def undo(self) -> bool:
        if not self.was_executed:
            LOGGER.warning("Cannot undo: command for message %s was not executed", self._message.id)
            return False
        self._result = None
        self._snapshot = None
        self.was_executed = False
        return True

    def __repr__(self) -> str:
        return f"ProcessMessageCommand(message={self._message.id}, executed={self.was_executed})"


class ConsolidatedProcessCommand:
    """Merge many messages and run the processor once on the merged unit."""

    def __init__(self, messages: Sequence[Message], processor: Processor) -> None:
        self._messages = list(messages)
        self._processor = processor
        self._consolidated: Optional[Message] = None
        self._result: Optional[str] = None
        self.was_executed = False

    @property
    def original_message_count(self) -> int:
        return len(self._messages)

    @property
    def consolidated_message(self) -> Optional[Message]:
        return self._consolidated

    @property
    def result(self) -> Optional[str]:
        """Processed text of the merged unit, for inspection and tests."""

        return self._result

    def execute(self) -> bool:
        if self.was_executed:
            # Safe for retries: the processor is never invoked twice.
            return True
        if not self._messages:
            LOGGER.warning("No messages to consolidate")
            return False

        self._consolidated = consolidate(self._messages)
        processed = self._processor.process(self._consolidated)
        if not _succeeded(processed):
            LOGGER.error(
                "Consolidated processing failed for %s messages: %s",
                len(self._messages),
                processed.metadata.get("error", "unknown error"),
            )
            return False

        self._result = processed.content
        self.was_executed = True
        LOGGER.debug("Consolidated %s messages into one processing call", len(self._messages))
        return True

    def undo(self) -> bool:
        self._consolidated = None
        self._result = None
        self.was_executed = False
        return True

    def __repr__(self) -> str:
        return f"ConsolidatedProcessCommand(messages={len(self._messages)}, executed={self.was_executed})"


class BatchProcessCommand:
    """Run one ProcessMessageCommand per message, sequentially."""

    def __init__(self, messages: Sequence[Message], processor: Processor) -> None:
        self._messages = list(messages)
        self._processor = processor
        self._applied: List[ProcessMessageCommand] = []
        self._results: Dict[str, str] = {}
        self.success_count = 0
        self.was_executed = False

    @property
    def results(self) -> Dict[str, str]:
        return dict(self._results)

    @property
    def result(self) -> Optional[str]:
        if not self._results:
            return None
        return "\n---\n".join(self._results.values())

    @property
    def processed_count(self) -> int:
        return len(self._applied)

    def execute(self) -> bool:
        if self.was_executed:
            LOGGER.warning("Batch command already executed")
            return False

        for message in self._messages:
            command = ProcessMessageCommand(message, self._processor)
            if command.execute():
                self._applied.append(command)
                self._results[message.id] = command.result or ""
                self.success_count += 1
            else:
                LOGGER.warning("Failed to process message %s", message.id)

        self.was_executed = True
        LOGGER.debug("Processed %s/%s messages", self.success_count, len(self._messages))
        return self.success_count > 0

    def undo(self) -> bool:
        if not self.was_executed:
            LOGGER.warning("Cannot undo: batch command not executed")
            return False

        remaining: List[ProcessMessageCommand] = []
        for command in reversed(self._applied):
            if command.undo():
                self._results.pop(command.message.id, None)
            else:
                remaining.append(command)

        if remaining:
            # Keep the sub-commands that could not be reversed for a later retry.
            self._applied = list(reversed(remaining))
            self.success_count = len(self._applied)
            return False

        self._applied.clear()
        self._results.clear()
        self.success_count = 0
        self.was_executed = False
        return True

    def __repr__(self) -> str:
        return f"BatchProcessCommand(messages={len(self._messages)}, processed={len(self._applied)})"


@dataclass(frozen=True)
class CommandStats:
    total_commands: int
    command_types: Dict[str, int]
    successful_commands: int

    @property
    def success_rate(self) -> float:
        if not self.total_commands:
            return 0.0
        return self.successful_commands / self.total_commands


class CommandInvoker:
    """Executes commands and keeps a bounded, thread-safe undo history."""

    def __init__(self, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if history_limit <= 0:
            raise ValueError("history_limit must be positive")
        self._history_limit = history_limit
        self._history: List[Command] = []
        # History entries already reversed by an undo_all that failed part way.
        self._reversed: List[Command] = []
        self._lock = threading.RLock()

    def execute(self, command: Command) -> bool:
        """Run a command; successful ones are appended to the history."""

        name = type(command).__name__
        try:
            success = command.execute()
        except Exception:
            LOGGER.exception("Exception during command execution: %s", name)
            return False

        if not success:
            LOGGER.warning("Command execution failed: %s", name)
            return False

        with self._lock:
            self._history.append(command)
            if len(self._history) > self._history_limit:
                evicted = self._history[: len(self._history) - self._history_limit]
                del self._history[: len(evicted)]
                self._forget(evicted)
        LOGGER.debug("Command executed successfully: %s", name)
        return True

    def _is_reversed(self, command: Command) -> bool:
        return any(entry is command for entry in self._reversed)

    def _forget(self, commands: Sequence[Command]) -> None:
        self._reversed = [entry for entry in self._reversed if not any(entry is c for c in commands)]

    def _undo(self, command: Command) -> bool:
        if self._is_reversed(command):
            return True
        name = type(command).__name__
        try:
            success = command.undo()
        except Exception:
            LOGGER.exception("Exception during command undo: %s", name)
            return False
        if not success:
            LOGGER.warning("Failed to undo command: %s", name)
        return success

    def undo_last(self) -> bool:
        with self._lock:
            if not self._history:
                LOGGER.warning("No commands to undo")
                return False
            command = self._history.pop()
            if not self._undo(command):
                # The command still holds its applied state.
                self._history.append(command)
                return False
            self._forget([command])
            return True

    def undo_all(self) -> bool:
        """Undo newest-first; history is cleared only if every undo succeeds.

        A failed pass stops at the first command that cannot be undone and
        leaves the history as it was. Commands it already reversed are
        remembered, so a retry does not ask them to undo twice.
        """

        with self._lock:
            for command in reversed(self._history):
                if not self._undo(command):
                    return False
                if not self._is_reversed(command):
                    self._reversed.append(command)
            self._history.clear()
            self._reversed.clear()
            return True

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()
            self._reversed.clear()

    def history(self) -> List[Command]:
        with self._lock:
            return list(self._history)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._history)

    def can_undo(self) -> bool:
        return self.count > 0

    def last_result(self) -> Optional[str]:
        with self._lock:
            if not self._history:
                return None
            return getattr(self._history[-1], "result", None)

    def stats(self) -> CommandStats:
        with self._lock:
            commands = list(self._history)
        types = Counter(type(command).__name__ for command in commands)
        successful = sum(1 for command in commands if getattr(command, "result", None) is not None)
        return CommandStats(
            total_commands=len(commands),
            command_types=dict(types),
            successful_commands=successful,
        )
