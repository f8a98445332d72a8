"""Workflow orchestration.

A Workflow binds one source, one processor and one destination. Every cycle
follows the same order:
1) Fetch one message (single mode) or up to batch_size messages (batch mode)
2) Process, reducing a batch to exactly one message
3) Deliver the result with a single send_one call

A cycle is best-effort, not a transaction: errors collapse to a False or a
failed result and the next scheduled tick fetches fresh data.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Mapping, Optional, Sequence, Type

from adapters.factories import DestinationFactory, SourceFactory
from adapters.formatting import EmailFormatter, TelegramFormatter, create_formatter
from adapters.llm_processor import DEFAULT_TIMEOUT_SECONDS, LLMProcessor, PromptBuilder
from core.commands import CommandInvoker, ConsolidatedProcessCommand, ProcessMessageCommand
from core.config import Credentials
from core.definitions import (
    EmailToTelegramConfig,
    TelegramToEmailConfig,
    WorkflowDefinition,
    WorkflowType,
)
from core.errors import ConfigurationError
from core.models import Message, WorkflowExecutionResult
from core.ports import (
    CursorStore,
    LanguageModel,
    MessageDestination,
    MessageSource,
    OutputFormatter,
    Processor,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 3


class Workflow:
    """Source -> Processor -> Destination."""

    def __init__(self, source: MessageSource, processor: Processor, destination: MessageDestination) -> None:
        self.source = source
        self.processor = processor
        self.destination = destination

    def run(self) -> bool:
        """Run a single-message cycle."""

        try:
            message = self.source.fetch_one()
            processed = self.processor.process(message)
            return self.destination.send_one(processed)
        except Exception:
            LOGGER.exception("Workflow run failed")
            return False

    def run_batch(self, batch_size: int = DEFAULT_BATCH_SIZE) -> bool:
        """Run a batch cycle; the batch is delivered as one consolidated message."""

        try:
            messages = self.source.fetch_many(batch_size)
            processed = self.processor.process_batch(messages)
            return self.destination.send_one(processed)
        except Exception:
            LOGGER.exception("Workflow batch run failed")
            return False

    def execute(self, batch_size: int = DEFAULT_BATCH_SIZE) -> WorkflowExecutionResult:
        """Run one cycle and describe it; batch_size 1 selects single mode."""

        try:
            if batch_size <= 1:
                fetched: Sequence[Message] = [self.source.fetch_one()]
                processed = self.processor.process(fetched[0])
            else:
                fetched = self.source.fetch_many(batch_size)
                processed = self.processor.process_batch(fetched)

            count = sum(1 for message in fetched if not message.is_empty)
            if count == 0:
                return WorkflowExecutionResult.ok("No new messages", 0)

            delivered = self.destination.send_one(processed)
        except Exception as exc:
            LOGGER.exception("Workflow execution failed")
            return WorkflowExecutionResult.failed(f"Workflow execution failed: {exc}", str(exc))

        if processed.metadata.get("processed") == "false":
            return WorkflowExecutionResult.failed(
                "Processing failed",
                processed.metadata.get("error"),
                processed_message_count=count,
            )
        if not delivered:
            return WorkflowExecutionResult.failed("Delivery failed", processed_message_count=count)
        return WorkflowExecutionResult.ok(f"Processed {count} message(s)", count)


class DestinationType(str, enum.Enum):
    EMAIL = "email"
    TELEGRAM = "telegram"


class FormatterStrategy(str, enum.Enum):
    AUTO = "auto"
    EMAIL_FORMAT = "email"
    GMAIL_FORMAT = "email"
    TELEGRAM_FORMAT = "telegram"
    CUSTOM = "custom"


class WorkflowBuilder:
    """Fluent builder; build() validates everything before creating anything."""

    def __init__(self, destination_factory: Type[DestinationFactory] = DestinationFactory) -> None:
        self._destination_factory = destination_factory
        self._source: Optional[MessageSource] = None
        self._processor: Optional[Processor] = None
        self._destination_type: Optional[DestinationType] = None
        self._destination_config: dict[str, Any] = {}
        self._strategy = FormatterStrategy.AUTO
        self._custom_formatter: Optional[OutputFormatter] = None

    def source(self, source: MessageSource) -> "WorkflowBuilder":
        self._source = source
        return self

    def processor(self, processor: Processor) -> "WorkflowBuilder":
        self._processor = processor
        return self

    def email_destination(self, recipients: Sequence[str], sender: str = "", **extra: Any) -> "WorkflowBuilder":
        self._destination_type = DestinationType.EMAIL
        self._destination_config = {**extra, "recipients": tuple(recipients), "sender": sender}
        return self

    gmail_destination = email_destination

    def telegram_destination(self, chat_id: str, **extra: Any) -> "WorkflowBuilder":
        self._destination_type = DestinationType.TELEGRAM
        self._destination_config = {**extra, "chat_id": chat_id}
        return self

    def formatter_strategy(self, strategy: FormatterStrategy) -> "WorkflowBuilder":
        self._strategy = FormatterStrategy(strategy)
        return self

    def custom_formatter(self, formatter: OutputFormatter) -> "WorkflowBuilder":
        self._custom_formatter = formatter
        self._strategy = FormatterStrategy.CUSTOM
        return self

    def _formatter(self) -> Optional[OutputFormatter]:
        if self._strategy is FormatterStrategy.CUSTOM:
            if self._custom_formatter is None:
                raise ConfigurationError("Custom formatter not provided")
            return self._custom_formatter
        if self._strategy is FormatterStrategy.EMAIL_FORMAT:
            return EmailFormatter()
        if self._strategy is FormatterStrategy.TELEGRAM_FORMAT:
            return TelegramFormatter()
        # AUTO: the factory supplies the destination's default.
        return None

    def build(self) -> Workflow:
        if self._source is None:
            raise ConfigurationError("Source is required")
        if self._processor is None:
            raise ConfigurationError("Processor is required")
        if self._destination_type is None:
            raise ConfigurationError("Destination is required")

        config = dict(self._destination_config)
        formatter = self._formatter()
        if formatter is not None:
            config["formatter"] = formatter
        destination = self._destination_factory.create(self._destination_type.value, config)
        return Workflow(self._source, self._processor, destination)


def _apply_formatter_choice(builder: WorkflowBuilder, choice: str) -> None:
    if choice in ("auto", ""):
        return
    if choice in ("email", "gmail"):
        builder.formatter_strategy(FormatterStrategy.EMAIL_FORMAT)
    elif choice == "telegram":
        builder.formatter_strategy(FormatterStrategy.TELEGRAM_FORMAT)
    else:
        builder.custom_formatter(create_formatter(choice))


class WorkflowExecutor:
    """Turns a stored definition into a Workflow and runs one cycle of it.

    A fresh Workflow is built per execution so edits to a definition take
    effect on the next tick.
    """

    def __init__(
        self,
        credentials: Credentials,
        language_model: LanguageModel,
        cursor_store: Optional[CursorStore] = None,
        llm_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        source_factory: Type[SourceFactory] = SourceFactory,
        destination_factory: Type[DestinationFactory] = DestinationFactory,
        invoker: Optional[CommandInvoker] = None,
    ) -> None:
        self._credentials = credentials
        self._language_model = language_model
        self._cursor_store = cursor_store
        self._llm_timeout = llm_timeout
        self._source_factory = source_factory
        self._destination_factory = destination_factory
        self.invoker = invoker or CommandInvoker()

    def _email_source_config(self, search_query: str, consume: bool) -> Mapping[str, Any]:
        creds = self._credentials
        return {
            "host": creds.imap_host,
            "port": creds.imap_port,
            "username": creds.imap_username,
            "password": creds.imap_password,
            "search_query": search_query,
            "consume": consume,
        }

    def _telegram_source_config(self, chat_id: str, consume: bool) -> Mapping[str, Any]:
        return {
            "bot_token": self._credentials.telegram_bot_token,
            "chat_id": chat_id or None,
            "consume": consume,
        }

    def processor_for(self, definition: WorkflowDefinition) -> LLMProcessor:
        prompt = PromptBuilder(definition.configuration.llm_prompt)
        return LLMProcessor(self._language_model, prompt, timeout=self._llm_timeout)

    def source_for(self, definition: WorkflowDefinition, consume: bool = True) -> MessageSource:
        """Build the source; consume=False leaves fetched messages unread."""

        config = definition.configuration
        if isinstance(config, EmailToTelegramConfig):
            return self._source_factory.create(
                "email", self._email_source_config(config.search_query, consume)
            )
        return self._source_factory.create(
            "telegram",
            self._telegram_source_config(config.telegram_chat_id, consume),
            cursor_store=self._cursor_store,
        )

    def build(self, definition: WorkflowDefinition) -> Workflow:
        """Assemble the workflow; raises ConfigurationError on bad settings."""

        config = definition.configuration
        builder = (
            WorkflowBuilder(self._destination_factory)
            .source(self.source_for(definition))
            .processor(self.processor_for(definition))
        )
        creds = self._credentials
        if definition.type is WorkflowType.EMAIL_TO_TELEGRAM:
            builder.telegram_destination(config.telegram_chat_id, bot_token=creds.telegram_bot_token)
        elif isinstance(config, TelegramToEmailConfig):
            builder.email_destination(
                config.email_recipients,
                config.email_sender,
                host=creds.smtp_host,
                port=creds.smtp_port,
                username=creds.smtp_username or None,
                password=creds.smtp_password or None,
                use_ssl=creds.smtp_use_ssl,
            )
        _apply_formatter_choice(builder, config.formatter)
        return builder.build()

    def __call__(self, definition: WorkflowDefinition) -> WorkflowExecutionResult:
        return self.execute(definition)

    def execute(self, definition: WorkflowDefinition) -> WorkflowExecutionResult:
        try:
            workflow = self.build(definition)
        except ConfigurationError as exc:
            LOGGER.error("Cannot build workflow %s: %s", definition.name, exc)
            return WorkflowExecutionResult.failed(f"Invalid configuration: {exc}", str(exc))
        return workflow.execute(definition.configuration.batch_size)

    def preview(self, definition: WorkflowDefinition) -> Optional[str]:
        """Fetch and process without delivering; returns the processed text.

        Messages are fetched without consuming them, so the next scheduled
        run still delivers them. Processing goes through the command invoker,
        so previews show up in its history and statistics.
        """

        source = self.source_for(definition, consume=False)
        processor = self.processor_for(definition)
        batch_size = definition.configuration.batch_size
        if batch_size <= 1:
            message = source.fetch_one()
            if message.is_empty:
                return None
            command = ProcessMessageCommand(message, processor)
        else:
            messages = [m for m in source.fetch_many(batch_size) if not m.is_empty]
            if not messages:
                return None
            command = ConsolidatedProcessCommand(messages, processor)
        if not self.invoker.execute(command):
            return None
        return command.result
