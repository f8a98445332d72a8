from __future__ import annotations

import smtplib
from typing import Sequence

import pytest

from adapters import destinations
from adapters.destinations import (
    BaseDestination,
    EmailDestination,
    TelegramDestination,
    email_subject,
    split_text,
)
from adapters.formatting import EmailFormatter
from core.models import Message, empty_message


def _message(message_id: str, platform: str = "telegram", sender: str = "Alice") -> Message:
    return Message(
        id=message_id,
        sender=sender,
        recipient="me",
        content=f"text {message_id}",
        timestamp=1_700_000_000_000,
        metadata={"platform": platform, "subject": "Quarterly report"},
    )


class CountingFormatter:
    def __init__(self) -> None:
        self.single_calls = 0
        self.batch_calls = 0

    def format_one(self, message: Message) -> str:
        self.single_calls += 1
        return f"one:{message.id}"

    def format_batch(self, messages: Sequence[Message]) -> str:
        self.batch_calls += 1
        return "batch:" + ",".join(m.id for m in messages)


class RecordingDestination(BaseDestination):
    def __init__(self, fail: bool = False) -> None:
        super().__init__(CountingFormatter())
        self.payloads: list[str] = []
        self.fail = fail

    def _deliver(self, payload: str, messages: Sequence[Message]) -> None:
        if self.fail:
            raise ConnectionError("unreachable")
        self.payloads.append(payload)


def test_send_many_with_one_message_delegates_to_send_one() -> None:
    destination = RecordingDestination()
    assert destination.send_many([_message("1")]) == [True]
    assert destination.formatter.single_calls == 1
    assert destination.formatter.batch_calls == 0
    assert destination.payloads == ["one:1"]


def test_send_many_with_five_messages_sends_one_batch() -> None:
    destination = RecordingDestination()
    messages = [_message(str(i)) for i in range(5)]

    assert destination.send_many(messages) == [True] * 5
    assert destination.formatter.batch_calls == 1
    assert destination.formatter.single_calls == 0
    assert destination.payloads == ["batch:0,1,2,3,4"]


def test_send_many_with_no_messages() -> None:
    destination = RecordingDestination()
    assert destination.send_many([]) == []
    assert destination.payloads == []


def test_delivery_errors_become_false() -> None:
    destination = RecordingDestination(fail=True)
    assert destination.send_one(_message("1")) is False
    assert destination.send_many([_message("1"), _message("2")]) == [False, False]


def test_empty_sentinel_is_discarded() -> None:
    destination = RecordingDestination()
    assert destination.send_one(empty_message("telegram")) is True
    assert destination.send_many([empty_message("telegram"), empty_message("telegram")]) == [True, True]
    assert destination.payloads == []


def test_split_text_respects_limit() -> None:
    text = "\n".join("x" * 50 for _ in range(10))
    chunks = split_text(text, limit=120)
    assert all(len(chunk) <= 120 for chunk in chunks)
    assert "".join(chunks) == text

    long_line = "y" * 250
    assert split_text(long_line, limit=100) == ["y" * 100, "y" * 100, "y" * 50]


def test_telegram_destination_posts_markdown(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []
    monkeypatch.setattr(
        destinations.telegram_api,
        "call",
        lambda token, method, payload, timeout=10: calls.append((token, method, payload)),
    )
    destination = TelegramDestination("1:abc", "42")

    assert destination.send_one(_message("1", platform="email")) is True
    token, method, payload = calls[0]
    assert (token, method) == ("1:abc", "sendMessage")
    assert payload["chat_id"] == "42"
    assert payload["parse_mode"] == "Markdown"
    assert "Email Summary" in payload["text"]


class FakeSMTP:
    instances: list["FakeSMTP"] = []

    def __init__(self, host: str, port: int, timeout: float = 30) -> None:
        self.host = host
        self.port = port
        self.sent = []
        self.logged_in = None
        self.tls = False
        FakeSMTP.instances.append(self)

    def __enter__(self) -> "FakeSMTP":
        return self

    def __exit__(self, *exc) -> None:
        return None

    def starttls(self) -> None:
        self.tls = True

    def login(self, username: str, password: str) -> None:
        self.logged_in = (username, password)

    def send_message(self, mail) -> None:
        self.sent.append(mail)


def test_email_destination_sends_html_with_text_alternative(monkeypatch: pytest.MonkeyPatch) -> None:
    FakeSMTP.instances.clear()
    monkeypatch.setattr(destinations.smtplib, "SMTP", FakeSMTP)
    destination = EmailDestination(
        ["a@example.com", "b@example.com"],
        "bot@example.com",
        host="smtp.example.com",
        username="bot",
        password="pw",
    )

    assert destination.send_many([_message("1"), _message("2")]) == [True, True]
    smtp = FakeSMTP.instances[0]
    assert smtp.tls is True
    assert smtp.logged_in == ("bot", "pw")
    mail = smtp.sent[0]
    assert mail["To"] == "a@example.com, b@example.com"
    assert mail["Subject"] == "Telegram Conversation Summary (2 messages)"
    html_part = mail.get_body(preferencelist=("html",))
    assert "Batch Analysis Report" in html_part.get_content()
    assert isinstance(destination.formatter, EmailFormatter)


def test_email_subject_depends_on_platform() -> None:
    assert email_subject(_message("1", "telegram", "Bob")) == "Telegram Message Summary from Bob"
    assert email_subject(_message("1", "email")) == "Processed Email: Quarterly report"
    assert email_subject(_message("1", "sms", "Bob")) == "Automated Message from Bob"


def test_email_destination_closes_connection_when_starttls_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    class RefusingSMTP(FakeSMTP):
        closed = False

        def starttls(self) -> None:
            raise smtplib.SMTPNotSupportedError("STARTTLS extension not supported by server.")

        def close(self) -> None:
            self.closed = True

    FakeSMTP.instances.clear()
    monkeypatch.setattr(destinations.smtplib, "SMTP", RefusingSMTP)
    destination = EmailDestination(["a@example.com"], "bot@example.com", host="smtp.example.com")

    assert destination.send_one(_message("1")) is False
    smtp = FakeSMTP.instances[0]
    assert smtp.closed is True
    assert smtp.sent == []
