"""Source and destination factories.

The string-keyed `create(type, config)` entry point is kept for persisted
and user-supplied configuration. Mappings are converted into per-type
settings dataclasses and validated before anything is constructed, so a bad
configuration fails here rather than on the first run.
"""

from __future__ import annotations

from dataclasses import MISSING, dataclass, fields
from typing import Any, Mapping, Optional, Tuple, Type, TypeVar, Union

from adapters.destinations import EmailDestination, TelegramDestination
from adapters.formatting import create_formatter, default_formatter_for
from adapters.sources import EmailSource, TelegramSource
from core.errors import ConfigurationError, UnsupportedTypeError
from core.ports import CursorStore, MessageDestination, MessageSource, OutputFormatter

SUPPORTED_TYPES = ("email", "gmail", "telegram")

FormatterSetting = Union[None, str, OutputFormatter]


def _require(errors: list[str], **values: Any) -> None:
    for name, value in values.items():
        if value is None or not str(value).strip():
            errors.append(f"{name} is required")


def _check(kind: str, errors: list[str]) -> None:
    if errors:
        raise ConfigurationError(f"Invalid {kind} configuration: " + "; ".join(errors))


@dataclass(frozen=True)
class EmailSourceSettings:
    host: str
    username: str
    password: str
    port: int = 993
    search_query: str = "UNSEEN"
    mailbox: str = "INBOX"
    consume: bool = True

    def validate(self) -> None:
        errors: list[str] = []
        _require(errors, host=self.host, username=self.username, password=self.password)
        _require(errors, search_query=self.search_query)
        _check("email source", errors)


@dataclass(frozen=True)
class TelegramSourceSettings:
    bot_token: str
    chat_id: Optional[str] = None
    consume: bool = True

    def validate(self) -> None:
        errors: list[str] = []
        _require(errors, bot_token=self.bot_token)
        _check("telegram source", errors)


@dataclass(frozen=True)
class EmailDestinationSettings:
    recipients: Tuple[str, ...]
    sender: str
    host: str
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    use_ssl: bool = False
    formatter: FormatterSetting = None

    def __post_init__(self) -> None:
        recipients = self.recipients
        if isinstance(recipients, str):
            recipients = [part.strip() for part in recipients.split(",")]
        object.__setattr__(self, "recipients", tuple(r for r in recipients if r))

    def validate(self) -> None:
        errors: list[str] = []
        if not self.recipients:
            errors.append("recipients is required")
        _require(errors, sender=self.sender, host=self.host)
        _check("email destination", errors)


@dataclass(frozen=True)
class TelegramDestinationSettings:
    bot_token: str
    chat_id: str
    formatter: FormatterSetting = None

    def validate(self) -> None:
        errors: list[str] = []
        _require(errors, bot_token=self.bot_token, chat_id=self.chat_id)
        _check("telegram destination", errors)


S = TypeVar("S")


def settings_from(settings_cls: Type[S], config: Union[S, Mapping[str, Any]]) -> S:
    """Build a validated settings object from a mapping; unknown keys are ignored."""

    if isinstance(config, settings_cls):
        settings = config
    else:
        declared = fields(settings_cls)
        missing = [
            item.name
            for item in declared
            if item.default is MISSING and item.default_factory is MISSING and config.get(item.name) is None
        ]
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")
        settings = settings_cls(**{item.name: config[item.name] for item in declared if item.name in config})
    settings.validate()
    return settings


def _normalize(kind: str, value: str) -> str:
    name = value.strip().lower()
    if name not in SUPPORTED_TYPES:
        raise UnsupportedTypeError(kind, value, SUPPORTED_TYPES)
    return "email" if name == "gmail" else name


def resolve_formatter(setting: FormatterSetting, destination_type: str) -> OutputFormatter:
    if setting is None or setting == "auto":
        return default_formatter_for(destination_type)
    if isinstance(setting, str):
        return create_formatter(setting)
    return setting


class SourceFactory:
    @staticmethod
    def supported_types() -> Tuple[str, ...]:
        return SUPPORTED_TYPES

    @staticmethod
    def create(
        source_type: str,
        config: Mapping[str, Any],
        cursor_store: Optional[CursorStore] = None,
    ) -> MessageSource:
        kind = _normalize("source", source_type)
        if kind == "email":
            settings = settings_from(EmailSourceSettings, config)
            return EmailSource(
                host=settings.host,
                username=settings.username,
                password=settings.password,
                port=int(settings.port),
                search_query=settings.search_query,
                mailbox=settings.mailbox,
                consume=bool(settings.consume),
            )
        settings = settings_from(TelegramSourceSettings, config)
        return TelegramSource(
            settings.bot_token,
            cursor_store=cursor_store,
            chat_id=settings.chat_id,
            consume=bool(settings.consume),
        )


class DestinationFactory:
    @staticmethod
    def supported_types() -> Tuple[str, ...]:
        return SUPPORTED_TYPES

    @staticmethod
    def create(destination_type: str, config: Mapping[str, Any]) -> MessageDestination:
        kind = _normalize("destination", destination_type)
        if kind == "email":
            settings = settings_from(EmailDestinationSettings, config)
            return EmailDestination(
                recipients=settings.recipients,
                sender=settings.sender,
                host=settings.host,
                port=int(settings.port),
                username=settings.username,
                password=settings.password,
                use_ssl=bool(settings.use_ssl),
                formatter=resolve_formatter(settings.formatter, kind),
            )
        settings = settings_from(TelegramDestinationSettings, config)
        return TelegramDestination(
            settings.bot_token,
            str(settings.chat_id),
            formatter=resolve_formatter(settings.formatter, kind),
        )
