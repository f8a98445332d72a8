"""Persisted workflow definitions.

A definition is what the user creates and what survives restarts. The
configuration is a closed set of frozen dataclasses (one per workflow type);
plain dicts only appear at the persistence boundary in parse_configuration.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, ClassVar, Mapping, Optional, Union

from core.errors import ConfigurationError
from core.models import now_millis

# Floor for the loop interval so a misconfigured workflow cannot hot-loop a
# remote API.
MIN_INTERVAL_SECONDS = 60
DEFAULT_INTERVAL_SECONDS = 300

FORMATTER_CHOICES = ("auto", "email", "gmail", "telegram", "compact", "debug")


class WorkflowType(str, enum.Enum):
    EMAIL_TO_TELEGRAM = "EMAIL_TO_TELEGRAM"
    TELEGRAM_TO_EMAIL = "TELEGRAM_TO_EMAIL"

    @classmethod
    def _missing_(cls, value: object) -> Optional["WorkflowType"]:
        # Older definitions were stored with GMAIL_* names.
        if isinstance(value, str):
            normalized = value.strip().upper().replace("GMAIL", "EMAIL")
            for member in cls:
                if member.value == normalized:
                    return member
        return None

    @property
    def display_name(self) -> str:
        source, _, destination = self.value.partition("_TO_")
        return f"{source.title()} to {destination.title()}"


def _check_common(errors: list[str], llm_prompt: str, batch_size: int, formatter: str) -> None:
    if batch_size <= 0:
        errors.append("batch_size must be positive")
    if formatter not in FORMATTER_CHOICES:
        errors.append(f"formatter must be one of: {', '.join(FORMATTER_CHOICES)}")
    if not isinstance(llm_prompt, str):
        errors.append("llm_prompt must be a string")


def _raise_if_errors(kind: str, errors: list[str]) -> None:
    if errors:
        raise ConfigurationError(f"Invalid {kind} configuration:\n  " + "\n  ".join(errors))


@dataclass(frozen=True)
class EmailToTelegramConfig:
    """Fetch mail with an IMAP search and post summaries to a Telegram chat."""

    kind: ClassVar[WorkflowType] = WorkflowType.EMAIL_TO_TELEGRAM

    telegram_chat_id: str
    search_query: str = "UNSEEN"
    llm_prompt: str = "Summarize this email briefly and highlight important points"
    batch_size: int = 5
    formatter: str = "auto"

    def validate(self) -> None:
        errors: list[str] = []
        if not str(self.telegram_chat_id).strip():
            errors.append("telegram_chat_id is required")
        if not self.search_query.strip():
            errors.append("search_query is required")
        _check_common(errors, self.llm_prompt, self.batch_size, self.formatter)
        _raise_if_errors(self.kind.value, errors)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TelegramToEmailConfig:
    """Collect chat messages from a bot and mail a consolidated summary."""

    kind: ClassVar[WorkflowType] = WorkflowType.TELEGRAM_TO_EMAIL

    email_recipients: tuple[str, ...]
    email_sender: str
    telegram_chat_id: str = ""
    llm_prompt: str = "Summarize this conversation and highlight key decisions or action items"
    batch_size: int = 10
    formatter: str = "auto"

    def __post_init__(self) -> None:
        # JSON gives us lists; keep the dataclass hashable and immutable.
        recipients = self.email_recipients
        if isinstance(recipients, str):
            recipients = [part.strip() for part in recipients.split(",")]
        object.__setattr__(self, "email_recipients", tuple(r for r in recipients if r))

    def validate(self) -> None:
        errors: list[str] = []
        if not self.email_recipients:
            errors.append("at least one email recipient is required")
        for recipient in self.email_recipients:
            if "@" not in recipient:
                errors.append(f"invalid email recipient: {recipient}")
        if not self.email_sender.strip():
            errors.append("email_sender is required")
        _check_common(errors, self.llm_prompt, self.batch_size, self.formatter)
        _raise_if_errors(self.kind.value, errors)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["email_recipients"] = list(self.email_recipients)
        return data


WorkflowConfiguration = Union[EmailToTelegramConfig, TelegramToEmailConfig]

_CONFIG_TYPES: dict[WorkflowType, type] = {
    WorkflowType.EMAIL_TO_TELEGRAM: EmailToTelegramConfig,
    WorkflowType.TELEGRAM_TO_EMAIL: TelegramToEmailConfig,
}


def parse_configuration(
    workflow_type: "WorkflowType | str", data: Mapping[str, Any]
) -> WorkflowConfiguration:
    """Build and validate the configuration variant for a workflow type."""

    try:
        kind = WorkflowType(workflow_type)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown workflow type: {workflow_type}") from exc

    config_cls = _CONFIG_TYPES[kind]
    known = {item.name for item in fields(config_cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown {kind.value} configuration keys: {', '.join(unknown)}")

    try:
        config = config_cls(**data)
    except TypeError as exc:
        # Missing required keys surface here.
        raise ConfigurationError(f"Incomplete {kind.value} configuration: {exc}") from exc
    config.validate()
    return config


@dataclass(frozen=True)
class WorkflowDefinition:
    """A saved workflow. is_running and last_run_at belong to the runner."""

    id: str
    name: str
    type: WorkflowType
    configuration: WorkflowConfiguration
    interval_seconds: int = DEFAULT_INTERVAL_SECONDS
    is_running: bool = False
    created_at: int = field(default_factory=now_millis)
    last_run_at: Optional[int] = None
    description: str = ""

    @classmethod
    def new(
        cls,
        name: str,
        configuration: WorkflowConfiguration,
        interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
        description: str = "",
    ) -> "WorkflowDefinition":
        definition = cls(
            id=uuid.uuid4().hex,
            name=name,
            type=configuration.kind,
            configuration=configuration,
            interval_seconds=interval_seconds,
            description=description,
        )
        definition.validate()
        return definition

    def validate(self) -> None:
        if not self.name.strip():
            raise ConfigurationError("Workflow name is required")
        if self.interval_seconds < MIN_INTERVAL_SECONDS:
            raise ConfigurationError(
                f"interval_seconds must be at least {MIN_INTERVAL_SECONDS} (got {self.interval_seconds})"
            )
        if self.configuration.kind is not self.type:
            raise ConfigurationError(
                f"Configuration {self.configuration.kind.value} does not match workflow type {self.type.value}"
            )
        self.configuration.validate()

    def edited(self, **changes: Any) -> "WorkflowDefinition":
        """Return an edited copy; the id never changes."""

        changes.pop("id", None)
        updated = replace(self, **changes)
        updated.validate()
        return updated

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "configuration": self.configuration.to_dict(),
            "interval_seconds": self.interval_seconds,
            "is_running": self.is_running,
            "created_at": self.created_at,
            "last_run_at": self.last_run_at,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkflowDefinition":
        kind = WorkflowType(data["type"])
        definition = cls(
            id=str(data.get("id") or uuid.uuid4().hex),
            name=str(data["name"]),
            type=kind,
            configuration=parse_configuration(kind, data.get("configuration", {})),
            interval_seconds=int(data.get("interval_seconds", DEFAULT_INTERVAL_SECONDS)),
            is_running=bool(data.get("is_running", False)),
            created_at=int(data.get("created_at") or now_millis()),
            last_run_at=data.get("last_run_at"),
            description=str(data.get("description", "")),
        )
        definition.validate()
        return definition


@dataclass(frozen=True)
class WorkflowTemplate:
    name: str
    description: str
    configuration: WorkflowConfiguration
    interval_seconds: int = DEFAULT_INTERVAL_SECONDS


# Starter templates offered by `courier templates`. Chat ids and addresses are
# placeholders the user replaces before adding the workflow.
DEFAULT_TEMPLATES: tuple[WorkflowTemplate, ...] = (
    WorkflowTemplate(
        name="Email Notifications",
        description="Send important email summaries to Telegram",
        configuration=EmailToTelegramConfig(
            telegram_chat_id="<chat id>",
            search_query="UNSEEN",
            batch_size=3,
        ),
    ),
    WorkflowTemplate(
        name="Chat Summary",
        description="Send Telegram conversation summaries via email",
        configuration=TelegramToEmailConfig(
            email_recipients=("<you@example.com>",),
            email_sender="<bot@example.com>",
            batch_size=20,
        ),
    ),
    WorkflowTemplate(
        name="Daily Digest",
        description="Daily summary of important emails",
        configuration=EmailToTelegramConfig(
            telegram_chat_id="<chat id>",
            search_query="UNSEEN",
            llm_prompt="Create a daily digest of these emails with key highlights:\n\n{content}",
            batch_size=10,
        ),
        interval_seconds=24 * 60 * 60,
    ),
)
