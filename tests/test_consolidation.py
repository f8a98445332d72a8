from __future__ import annotations

import pytest

from core.consolidation import CONSOLIDATED_ID_PREFIX, FOOTER, HEADER, consolidate, participants, time_range
from core.models import Message


def _message(message_id: str, sender: str, timestamp: int, content: str = "hi") -> Message:
    return Message(
        id=message_id,
        sender=sender,
        recipient="chat",
        content=content,
        timestamp=timestamp,
        metadata={"platform": "telegram", "chat_type": "group"},
    )


def test_consolidate_three_messages_from_two_senders() -> None:
    messages = [
        _message("1", "A", 100, "first"),
        _message("2", "B", 200, "second"),
        _message("3", "A", 150, "third"),
    ]

    merged = consolidate(messages)

    assert participants(messages) == ["A", "B"]
    assert time_range(messages) == (100, 200)
    assert merged.metadata["message_count"] == "3"
    assert merged.metadata["participants"] == "A,B"
    assert merged.metadata["time_range"] == "100 to 200"
    assert merged.metadata["consolidated"] == "true"
    assert merged.metadata["chat_type"] == "group"
    assert merged.sender == "Multiple Participants: A, B"
    assert merged.timestamp == 200


def test_consolidated_id_differs_from_inputs() -> None:
    messages = [_message("consolidated_1", "A", 100)]
    merged = consolidate(messages)
    assert merged.id.startswith(CONSOLIDATED_ID_PREFIX)
    assert merged.id not in {message.id for message in messages}


def test_transcript_is_readable_and_ordered() -> None:
    merged = consolidate([_message("1", "A", 0, "hello"), _message("2", "B", 1000, "world")])
    content = merged.content

    assert content.startswith(HEADER)
    assert content.rstrip().endswith(FOOTER)
    assert "Participants: A, B" in content
    assert "Total Messages: 2" in content
    assert "1. [1970-01-01 00:00:00] A: hello" in content
    assert "2. [1970-01-01 00:00:01] B: world" in content
    assert content.index("A: hello") < content.index("B: world")
    # Entries are separated by a blank line.
    assert "A: hello\n\n2." in content


def test_single_sender_is_kept_as_sender() -> None:
    merged = consolidate([_message("1", "A", 1), _message("2", "A", 2)])
    assert merged.sender == "A"


def test_consolidate_is_deterministic_apart_from_id() -> None:
    messages = [_message("1", "A", 1), _message("2", "B", 2)]
    assert consolidate(messages).content == consolidate(messages).content


def test_consolidate_rejects_empty_list() -> None:
    with pytest.raises(ValueError):
        consolidate([])
