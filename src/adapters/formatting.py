"""Output formatter strategies.

Keeping formatting here prevents drift between destinations and keeps
payloads consistent regardless of which destination delivers them. Each
destination type owns a default formatter; callers may inject another one.
"""

from __future__ import annotations

import html
from datetime import datetime
from typing import Optional, Sequence

from core.errors import UnsupportedTypeError
from core.models import Message, now_millis
from core.ports import OutputFormatter

DIVIDER = "──────────────"


def _local_time(timestamp: int, fmt: str) -> str:
    return datetime.fromtimestamp(timestamp / 1000).astimezone().strftime(fmt).strip()


def _noun(platform: str, count: int) -> str:
    if platform in {"email", "gmail"}:
        return "email" if count == 1 else "emails"
    return "message" if count == 1 else "messages"


def escape_md(value: str) -> str:
    """Escape the characters legacy Telegram Markdown treats as markup."""

    for ch in r"\_*[`":
        value = value.replace(ch, f"\\{ch}")
    return value


class TelegramFormatter:
    """Compact Telegram Markdown for chat destinations."""

    parse_mode = "Markdown"

    def format_one(self, message: Message) -> str:
        timestamp = _local_time(message.timestamp, "%b %d, %H:%M")
        sender = escape_md(message.sender)
        content = escape_md(message.content)

        if message.platform in {"email", "gmail"}:
            subject = escape_md(message.metadata.get("subject") or "No Subject")
            lines = [
                "📧 *Email Summary*",
                "",
                f"*From:* {sender}",
                f"*Subject:* {subject}",
                f"*Time:* {timestamp}",
                DIVIDER,
                "",
                content,
                "",
                "_Automatically processed from email_",
            ]
        elif message.platform == "telegram":
            lines = [
                "🤖 *Message Analysis*",
                "",
                f"*Original From:* {sender}",
                f"*Processed At:* {timestamp}",
                DIVIDER,
                "",
                content,
                "",
                "_Processed by LLM_",
            ]
        else:
            lines = [
                "📝 *Automated Message*",
                "",
                f"*From:* {sender}",
                f"*Time:* {timestamp}",
                DIVIDER,
                "",
                content,
            ]
        return "\n".join(lines)

    def format_batch(self, messages: Sequence[Message]) -> str:
        if not messages:
            return "No messages to format"

        platform = messages[0].platform
        generated = _local_time(now_millis(), "%b %d, %H:%M")
        lines = [
            "📊 *Batch Summary Report*",
            "",
            f"*Source:* {escape_md(platform.upper())}",
            f"*Messages:* {len(messages)}",
            f"*Generated At:* {generated}",
            DIVIDER,
        ]
        for index, message in enumerate(messages, start=1):
            header = f"*{index}. {escape_md(message.sender)}*"
            subject = message.metadata.get("subject")
            if subject:
                header += f" — {escape_md(subject)}"
            lines.extend(["", header, escape_md(message.content)])
        lines.extend([DIVIDER, f"_Batch of {len(messages)} {_noun(platform, len(messages))}_"])
        return "\n".join(lines)


_EMAIL_STYLE = (
    "body { font-family: Arial, sans-serif; margin: 20px; line-height: 1.6; }"
    " .header { background: #2c3e50; color: white; padding: 15px; border-radius: 5px; }"
    " .meta { background: #ecf0f1; padding: 10px; border-radius: 5px; margin: 10px 0; }"
    " .content { margin: 20px 0; padding: 15px; background: #f8f9fa; border-radius: 5px; }"
    " .footer { color: #7f8c8d; font-size: 0.9em; margin-top: 15px; }"
)


def _html_paragraphs(text: str) -> str:
    return html.escape(text).replace("\n", "<br>")


def _html_document(title: str, body_parts: list[str]) -> str:
    parts = [
        "<!DOCTYPE html>",
        "<html>",
        "<head>",
        f"<title>{html.escape(title)}</title>",
        f"<style>{_EMAIL_STYLE}</style>",
        "</head>",
        "<body>",
        *body_parts,
        "</body>",
        "</html>",
    ]
    return "\n".join(parts)


class EmailFormatter:
    """Structured HTML for email destinations."""

    content_type = "html"

    def format_one(self, message: Message) -> str:
        timestamp = html.escape(_local_time(message.timestamp, "%b %d, %Y %H:%M"))
        sender = html.escape(message.sender)

        if message.platform == "telegram":
            title = "Telegram Message Analysis"
            meta = [
                f"<strong>From:</strong> {sender}<br>",
                f"<strong>Chat Type:</strong> {html.escape(message.metadata.get('chat_type', 'Unknown'))}<br>",
                f"<strong>Processed At:</strong> {timestamp}",
            ]
            footer = "This email was automatically generated from a Telegram message."
        elif message.platform in {"email", "gmail"}:
            title = "Email Analysis Report"
            meta = [
                f"<strong>Original From:</strong> {sender}<br>",
                f"<strong>Original Subject:</strong> {html.escape(message.metadata.get('subject') or 'No Subject')}<br>",
                f"<strong>Processed At:</strong> {timestamp}",
            ]
            footer = "This email was automatically processed and analyzed."
        else:
            title = "Automated Message"
            meta = [f"<strong>From:</strong> {sender}<br>", f"<strong>Time:</strong> {timestamp}"]
            footer = "This email was generated automatically."

        body = [
            f'<div class="header"><h2>{html.escape(title)}</h2></div>',
            '<div class="meta">',
            *meta,
            "</div>",
            f'<div class="content"><p>{_html_paragraphs(message.content)}</p></div>',
            '<div class="footer">',
            f"<p>{html.escape(footer)}</p>",
            f"<p>Message ID: {html.escape(message.id)}</p>",
            "</div>",
        ]
        return _html_document(title, body)

    def format_batch(self, messages: Sequence[Message]) -> str:
        if not messages:
            return "<p>No messages to format</p>"

        platform = messages[0].platform
        generated = html.escape(_local_time(now_millis(), "%b %d, %Y %H:%M"))
        body = [
            '<div class="header"><h2>Batch Analysis Report</h2></div>',
            '<div class="meta">',
            f"<strong>Source Platform:</strong> {html.escape(platform.upper())} | ",
            f"<strong>Messages:</strong> {len(messages)} | ",
            f"<strong>Generated:</strong> {generated}",
            "</div>",
        ]
        for message in messages:
            subject = message.metadata.get("subject")
            heading = html.escape(message.sender)
            if subject:
                heading += f" &mdash; {html.escape(subject)}"
            body.extend(
                [
                    '<div class="content">',
                    f"<h3>{heading}</h3>",
                    f"<p>{_html_paragraphs(message.content)}</p>",
                    "</div>",
                ]
            )
        body.append(
            f'<div class="footer"><p>Generated from {len(messages)} {_noun(platform, len(messages))}.</p></div>'
        )
        return _html_document("Batch Analysis Report", body)


class CompactFormatter:
    """One line per message, useful for logs and low-noise chats."""

    def format_one(self, message: Message) -> str:
        return f"[{message.platform}] {message.sender} ({_local_time(message.timestamp, '%H:%M')}): {message.content}"

    def format_batch(self, messages: Sequence[Message]) -> str:
        if not messages:
            return "Batch (0 items): Empty"
        return "\n".join([f"Batch ({len(messages)} items):", *(self.format_one(m) for m in messages)])


class DebugFormatter:
    """Dump every field; meant for test workflows."""

    def format_one(self, message: Message) -> str:
        lines = [
            "DEBUG FORMAT:",
            f"ID: {message.id}",
            f"Sender: {message.sender}",
            f"Recipient: {message.recipient}",
            f"Timestamp: {message.timestamp}",
            f"Platform: {message.metadata.get('platform', 'N/A')}",
            f"Content Length: {len(message.content)}",
            f"Metadata Keys: {', '.join(sorted(message.metadata))}",
            "",
            "Content:",
            message.content,
        ]
        return "\n".join(lines)

    def format_batch(self, messages: Sequence[Message]) -> str:
        lines = [
            "DEBUG BATCH FORMAT:",
            f"Message Count: {len(messages)}",
            f"Message IDs: {', '.join(m.id for m in messages)}",
            f"Total Content Length: {sum(len(m.content) for m in messages)}",
            "",
            "First Message Content:",
            messages[0].content if messages else "No messages",
        ]
        return "\n".join(lines)


class TemplateFormatter:
    """User-supplied templates with {placeholder} substitution."""

    def __init__(self, single_template: str, batch_template: Optional[str] = None) -> None:
        self._single = single_template
        self._batch = batch_template or single_template

    @staticmethod
    def _fill(template: str, message: Optional[Message], count: int) -> str:
        values = {
            "id": message.id if message else "",
            "sender": message.sender if message else "",
            "recipient": message.recipient if message else "",
            "content": message.content if message else "",
            "timestamp": _local_time(message.timestamp if message else now_millis(), "%b %d, %Y %H:%M"),
            "platform": message.platform if message else "unknown",
            "subject": message.metadata.get("subject", "") if message else "",
            "count": str(count),
        }
        rendered = template
        for key, value in values.items():
            rendered = rendered.replace("{" + key + "}", value)
        return rendered

    def format_one(self, message: Message) -> str:
        return self._fill(self._single, message, 1)

    def format_batch(self, messages: Sequence[Message]) -> str:
        first = messages[0] if messages else None
        return self._fill(self._batch, first, len(messages))


_FORMATTERS = {
    "email": EmailFormatter,
    "gmail": EmailFormatter,
    "telegram": TelegramFormatter,
    "compact": CompactFormatter,
    "debug": DebugFormatter,
}

SUPPORTED_FORMATTERS = tuple(_FORMATTERS)


def create_formatter(name: str) -> OutputFormatter:
    """Return a new formatter for the given name."""

    try:
        return _FORMATTERS[name.strip().lower()]()
    except KeyError:
        raise UnsupportedTypeError("formatter", name, SUPPORTED_FORMATTERS) from None


def default_formatter_for(destination_type: str) -> OutputFormatter:
    """Return the formatter a destination type uses when none is configured."""

    return create_formatter(destination_type)
