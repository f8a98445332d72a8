"""Consolidation of many messages into one unit of work.

The merged message carries a plain-text transcript. It is what the language
model reduces in batch mode, and it stays readable on its own so it can serve
as the audit trail when model processing fails.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Sequence, Tuple

from core.models import Message, now_millis

CONSOLIDATED_ID_PREFIX = "consolidated_"

HEADER = "=== CONVERSATION SUMMARY ==="
CONTENT_MARKER = "=== CONVERSATION CONTENT ==="
FOOTER = "=== END OF CONVERSATION ==="


def participants(messages: Sequence[Message]) -> List[str]:
    """Distinct senders in first-seen order."""

    seen: dict[str, None] = {}
    for message in messages:
        seen.setdefault(message.sender, None)
    return list(seen)


def time_range(messages: Sequence[Message]) -> Tuple[int, int]:
    """Return (min timestamp, max timestamp) over a non-empty list."""

    stamps = [message.timestamp for message in messages]
    return min(stamps), max(stamps)


def format_timestamp(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def build_transcript(messages: Sequence[Message]) -> str:
    """Render the deterministic transcript for an ordered message list."""

    people = participants(messages)
    start, end = time_range(messages)

    lines = [
        HEADER,
        f"Participants: {', '.join(people)}",
        f"Time Range: {format_timestamp(start)} to {format_timestamp(end)} UTC",
        f"Total Messages: {len(messages)}",
        "",
        CONTENT_MARKER,
    ]
    entries = [
        f"{index}. [{format_timestamp(message.timestamp)}] {message.sender}: {message.content.strip()}"
        for index, message in enumerate(messages, start=1)
    ]
    lines.append("\n\n".join(entries))
    lines.extend(["", FOOTER])
    return "\n".join(lines)


def consolidate(messages: Sequence[Message]) -> Message:
    """Merge an ordered list of messages into one synthetic message.

    Input order is preserved (it is assumed to be fetch order). Raises
    ValueError for an empty list; callers decide how to report that.
    """

    if not messages:
        raise ValueError("Cannot consolidate an empty message list")

    people = participants(messages)
    start, end = time_range(messages)
    first = messages[0]

    if len(people) == 1:
        sender = people[0]
    else:
        sender = f"Multiple Participants: {', '.join(people)}"

    metadata = {
        "platform": first.platform,
        "consolidated": "true",
        "message_count": str(len(messages)),
        "participants": ",".join(people),
        "time_range": f"{start} to {end}",
        "source_ids": ",".join(message.id for message in messages),
    }
    if "chat_type" in first.metadata:
        metadata["chat_type"] = first.metadata["chat_type"]

    return Message(
        id=f"{CONSOLIDATED_ID_PREFIX}{now_millis()}",
        sender=sender,
        recipient=first.recipient,
        content=build_transcript(messages),
        timestamp=end,
        metadata=metadata,
    )
