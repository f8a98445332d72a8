from __future__ import annotations

from typing import Any, Mapping, Optional

import pytest

from adapters import sources
from adapters.sources import EmailSource, TelegramSource
from adapters.telegram_api import TelegramApiError

TOKEN = "12345:secret"


class MemoryCursors:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    def get_cursor(self, key: str) -> Optional[str]:
        return self.values.get(key)

    def set_cursor(self, key: str, value: str) -> None:
        self.values[key] = value


def _update(update_id: int, text: str, chat_id: int = 42, message_id: Optional[int] = None) -> dict:
    return {
        "update_id": update_id,
        "message": {
            "message_id": message_id or update_id,
            "date": 1_700_000_000,
            "text": text,
            "chat": {"id": chat_id, "type": "group", "title": "Team"},
            "from": {"first_name": "Ada", "last_name": "Lovelace", "username": "ada"},
        },
    }


@pytest.fixture
def bot_api(monkeypatch: pytest.MonkeyPatch):
    state: dict[str, Any] = {"responses": [], "payloads": []}

    def fake_call(bot_token: str, method: str, payload: Mapping[str, Any], timeout: float = 10) -> Any:
        assert method == "getUpdates"
        state["payloads"].append(dict(payload))
        response = state["responses"].pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(sources.telegram_api, "call", fake_call)
    return state


def test_telegram_updates_become_messages(bot_api) -> None:
    bot_api["responses"].append([_update(10, "hello"), _update(11, "second")])
    cursors = MemoryCursors()

    messages = TelegramSource(TOKEN, cursor_store=cursors).fetch_many(5)

    assert [m.content for m in messages] == ["hello", "second"]
    first = messages[0]
    assert first.id == "42_10"
    assert first.sender == "Ada Lovelace"
    assert first.timestamp == 1_700_000_000_000
    assert first.platform == "telegram"
    assert first.metadata["sender_username"] == "ada"
    assert first.metadata["chat_title"] == "Team"
    assert cursors.values["telegram:12345"] == "12"


def test_telegram_offset_is_resumed_from_the_cursor_store(bot_api) -> None:
    cursors = MemoryCursors()
    cursors.set_cursor("telegram:12345", "77")
    bot_api["responses"].append([])

    messages = TelegramSource(TOKEN, cursor_store=cursors).fetch_many(3)

    assert bot_api["payloads"][0]["offset"] == 77
    assert bot_api["payloads"][0]["limit"] == 3
    assert len(messages) == 1 and messages[0].is_empty


def test_telegram_chat_filter_and_duplicates(bot_api) -> None:
    bot_api["responses"].append(
        [
            _update(1, "other chat", chat_id=7),
            _update(2, "kept"),
            _update(3, "repeat", message_id=2),
            {"update_id": 4, "message": {"message_id": 4, "chat": {"id": 42}}},
        ]
    )

    messages = TelegramSource(TOKEN, chat_id="42").fetch_many(10)

    assert [m.content for m in messages] == ["kept"]


def test_telegram_errors_yield_the_empty_sentinel(bot_api) -> None:
    bot_api["responses"].append(TelegramApiError("Bot API getUpdates returned: Unauthorized"))

    message = TelegramSource(TOKEN).fetch_one()

    assert message.is_empty
    assert message.platform == "telegram"


RAW_PLAIN = (
    b"Message-ID: <one@example.com>\r\n"
    b"From: Bob <bob@example.com>\r\n"
    b"To: me@example.com\r\n"
    b"Subject: Invoice\r\n"
    b"Date: Tue, 14 Nov 2023 22:13:20 +0000\r\n"
    b"Content-Type: text/plain; charset=utf-8\r\n"
    b"\r\n"
    b"Please pay by Friday.\r\n"
)

RAW_HTML = (
    b"From: Carol <carol@example.com>\r\n"
    b"To: me@example.com\r\n"
    b"Subject: Newsletter\r\n"
    b"Content-Type: text/html; charset=utf-8\r\n"
    b"\r\n"
    b"<p>Big&nbsp;<b>news</b></p>\r\n"
)


class FakeIMAP:
    def __init__(self, messages: dict[bytes, bytes], search_status: str = "OK") -> None:
        self.messages = messages
        self.search_status = search_status
        self.calls: list[tuple] = []

    def login(self, username: str, password: str) -> None:
        self.calls.append(("login", username))

    def select(self, mailbox: str) -> None:
        self.calls.append(("select", mailbox))

    def search(self, charset: Any, query: str) -> tuple[str, list[bytes]]:
        self.calls.append(("search", query))
        return self.search_status, [b" ".join(self.messages)]

    def fetch(self, num: bytes, parts: str) -> tuple[str, list]:
        self.calls.append(("fetch", num))
        return "OK", [(num + b" (RFC822 {1})", self.messages[num]), b")"]

    def logout(self) -> None:
        self.calls.append(("logout",))


def test_email_source_parses_newest_messages() -> None:
    client = FakeIMAP({b"1": RAW_PLAIN, b"2": RAW_HTML, b"3": RAW_PLAIN.replace(b"one@", b"three@")})
    source = EmailSource("imap.example.com", "me", "pw", search_query="UNSEEN", client_factory=lambda: client)

    messages = source.fetch_many(2)

    assert ("search", "UNSEEN") in client.calls
    assert [call for call in client.calls if call[0] == "fetch"] == [("fetch", b"2"), ("fetch", b"3")]
    assert client.calls[-1] == ("logout",)

    html_mail, plain_mail = messages
    assert html_mail.id == "imap_2"
    assert "news" in html_mail.content
    assert "<" not in html_mail.content
    assert html_mail.metadata["subject"] == "Newsletter"
    assert plain_mail.id == "<three@example.com>"
    assert plain_mail.content == "Please pay by Friday."
    assert plain_mail.sender == "Bob <bob@example.com>"
    assert plain_mail.timestamp == 1_700_000_000_000
    assert plain_mail.platform == "email"


def test_email_source_failures_yield_the_empty_sentinel() -> None:
    client = FakeIMAP({b"1": RAW_PLAIN}, search_status="NO")
    source = EmailSource("imap.example.com", "me", "pw", client_factory=lambda: client)

    message = source.fetch_one()

    assert message.is_empty
    assert message.platform == "email"
    assert client.calls[-1] == ("logout",)


def test_email_source_with_no_matches() -> None:
    source = EmailSource("imap.example.com", "me", "pw", client_factory=lambda: FakeIMAP({}))
    assert source.fetch_one().is_empty


def test_updates_for_other_chats_wait_for_their_reader(bot_api) -> None:
    cursors = MemoryCursors()
    bot_api["responses"].extend([[_update(1, "for team", chat_id=42), _update(2, "for ops", chat_id=7)], []])

    team = TelegramSource(TOKEN, cursor_store=cursors, chat_id="42").fetch_many(5)
    ops = TelegramSource(TOKEN, cursor_store=cursors, chat_id="7").fetch_many(5)

    assert [m.content for m in team] == ["for team"]
    assert [m.content for m in ops] == ["for ops"]
    assert bot_api["payloads"][1]["offset"] == 3
    assert cursors.values["telegram:12345:parked"] == "[]"


def test_overflow_beyond_the_requested_count_is_kept(bot_api) -> None:
    cursors = MemoryCursors()
    bot_api["responses"].extend([[_update(1, "one"), _update(2, "two")], []])
    source = TelegramSource(TOKEN, cursor_store=cursors)

    assert source.fetch_one().content == "one"
    assert source.fetch_one().content == "two"


def test_telegram_peek_does_not_persist(bot_api) -> None:
    cursors = MemoryCursors()
    bot_api["responses"].extend([[_update(1, "hi", chat_id=7), _update(2, "hello")]] * 2)

    peeked = TelegramSource(TOKEN, cursor_store=cursors, chat_id="42", consume=False).fetch_many(5)
    assert [m.content for m in peeked] == ["hello"]
    assert cursors.values == {}

    again = TelegramSource(TOKEN, cursor_store=cursors, chat_id="42").fetch_many(5)
    assert [m.content for m in again] == ["hello"]
    assert "offset" not in bot_api["payloads"][1]


def test_non_positive_counts_fetch_nothing(bot_api) -> None:
    client = FakeIMAP({str(n).encode(): RAW_PLAIN for n in range(1, 8)})
    source = EmailSource("imap.example.com", "me", "pw", client_factory=lambda: client)

    assert [m.is_empty for m in source.fetch_many(0)] == [True]
    assert client.calls == []
    assert TelegramSource(TOKEN).fetch_many(0)[0].is_empty
    assert TelegramSource(TOKEN).fetch_many(-1)[0].is_empty
    assert bot_api["payloads"] == []


def test_email_peek_keeps_messages_unseen() -> None:
    fetched: list[str] = []

    class PeekingIMAP(FakeIMAP):
        def fetch(self, num: bytes, parts: str) -> tuple[str, list]:
            fetched.append(parts)
            return super().fetch(num, parts)

    client = PeekingIMAP({b"1": RAW_PLAIN})
    source = EmailSource("imap.example.com", "me", "pw", client_factory=lambda: client, consume=False)

    assert source.fetch_one().content == "Please pay by Friday."
    assert fetched == ["(BODY.PEEK[])"]
