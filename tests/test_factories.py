from __future__ import annotations

import pytest

from adapters.destinations import EmailDestination, TelegramDestination
from adapters.factories import (
    DestinationFactory,
    EmailDestinationSettings,
    SourceFactory,
    TelegramSourceSettings,
    settings_from,
)
from adapters.formatting import CompactFormatter, EmailFormatter, TelegramFormatter
from adapters.sources import EmailSource, TelegramSource
from core.errors import ConfigurationError, UnsupportedTypeError


def test_source_factory_creates_each_type() -> None:
    email = SourceFactory.create(
        "gmail", {"host": "imap.example.com", "username": "me", "password": "pw", "search_query": "ALL"}
    )
    assert isinstance(email, EmailSource)
    assert isinstance(SourceFactory.create("telegram", {"bot_token": "1:abc"}), TelegramSource)


def test_destination_factory_supplies_default_formatter() -> None:
    telegram = DestinationFactory.create("telegram", {"bot_token": "1:abc", "chat_id": "42"})
    assert isinstance(telegram, TelegramDestination)
    assert isinstance(telegram.formatter, TelegramFormatter)

    email = DestinationFactory.create(
        "email", {"recipients": ["a@example.com"], "sender": "bot@example.com", "host": "smtp.example.com"}
    )
    assert isinstance(email, EmailDestination)
    assert isinstance(email.formatter, EmailFormatter)


def test_destination_factory_accepts_formatter_name_or_instance() -> None:
    named = DestinationFactory.create("telegram", {"bot_token": "1:abc", "chat_id": "42", "formatter": "compact"})
    assert isinstance(named.formatter, CompactFormatter)

    custom = CompactFormatter()
    given = DestinationFactory.create("telegram", {"bot_token": "1:abc", "chat_id": "42", "formatter": custom})
    assert given.formatter is custom


def test_unknown_types_are_rejected() -> None:
    with pytest.raises(UnsupportedTypeError, match="source"):
        SourceFactory.create("sms", {})
    with pytest.raises(UnsupportedTypeError, match="destination"):
        DestinationFactory.create("fax", {})
    assert SourceFactory.supported_types() == ("email", "gmail", "telegram")


def test_missing_fields_fail_at_construction() -> None:
    with pytest.raises(ConfigurationError, match="chat_id"):
        DestinationFactory.create("telegram", {"bot_token": "1:abc"})
    with pytest.raises(ConfigurationError, match="bot_token"):
        SourceFactory.create("telegram", {"bot_token": "  "})


def test_settings_from_normalizes_recipients() -> None:
    settings = settings_from(
        EmailDestinationSettings,
        {"recipients": "a@example.com, b@example.com", "sender": "bot@example.com", "host": "smtp", "extra": 1},
    )
    assert settings.recipients == ("a@example.com", "b@example.com")
    assert settings_from(TelegramSourceSettings, settings_from(TelegramSourceSettings, {"bot_token": "1:x"})).bot_token == "1:x"
