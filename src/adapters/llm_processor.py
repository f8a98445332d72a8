"""Language-model processor.

Processing failures never propagate: the processor returns a message whose
content states the error and whose metadata marks processed=false, so the
destination stage still has something to deliver.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from core.consolidation import consolidate
from core.models import Message, empty_message, error_message, now_millis
from core.ports import LanguageModel

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0

EMAIL_PROMPT = """Please analyze and summarize this email content:

{content}

Provide a concise summary focusing on:
1. Main topic or purpose
2. Key points or action items
3. Urgency level
4. Brief recommendation"""

TELEGRAM_PROMPT = """Please analyze this Telegram conversation and provide insights:

{content}

Focus on:
1. Main topics discussed
2. Important decisions or conclusions
3. Action items or next steps
4. Overall sentiment"""

BATCH_PROMPT = """You are analyzing a batch of {noun} from {platform}.

{content}

Please provide a comprehensive analysis including:
1. Summary of all messages
2. Key themes and topics
3. Important action items across all messages
4. Overall assessment and recommendations

Format your response clearly with headings."""

GENERIC_PROMPT = """Please analyze and summarize this content:

{content}

Provide a clear, concise summary of the main points."""


class PromptBuilder:
    """Builds the model prompt for a message.

    A user template replaces the built-in prompts. `{content}` marks where
    the message goes; without it the content is appended.
    """

    def __init__(self, template: Optional[str] = None) -> None:
        self._template = (template or "").strip()

    def build(self, message: Message) -> str:
        if self._template:
            if "{content}" in self._template:
                return self._template.replace("{content}", message.content)
            return f"{self._template}\n\n{message.content}"

        platform = message.platform
        if message.metadata.get("consolidated") == "true":
            noun = "emails" if platform in {"email", "gmail"} else "messages"
            return BATCH_PROMPT.format(noun=noun, platform=platform, content=message.content)
        if platform in {"email", "gmail"}:
            return EMAIL_PROMPT.format(content=message.content)
        if platform == "telegram":
            return TELEGRAM_PROMPT.format(content=message.content)
        return GENERIC_PROMPT.format(content=message.content)


class LLMProcessor:
    """Processor backed by a LanguageModel."""

    def __init__(
        self,
        model: LanguageModel,
        prompt_builder: Optional[PromptBuilder] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._model = model
        self._prompts = prompt_builder or PromptBuilder()
        self._timeout = timeout

    def process(self, message: Message) -> Message:
        if message.is_empty:
            return message
        try:
            content = self._model.complete(self._prompts.build(message), self._timeout)
        except Exception as exc:
            LOGGER.exception("Failed to process message %s", message.id)
            return error_message(f"Failed to process message - {exc}", source=message)

        return message.with_content(
            content,
            processed="true",
            processor="llm",
            original_content_length=str(len(message.content)),
        )

    def process_batch(self, messages: Sequence[Message]) -> Message:
        """Reduce a batch to one message with a single model call."""

        if not messages:
            LOGGER.warning("process_batch called with no messages")
            return error_message("No messages to process")

        real = [message for message in messages if not message.is_empty]
        if not real:
            return empty_message(messages[0].platform)

        merged = consolidate(real)
        platform = merged.platform
        stamp = now_millis()
        try:
            content = self._model.complete(self._prompts.build(merged), self._timeout)
        except Exception as exc:
            LOGGER.exception("Failed to process batch of %s messages", len(real))
            # The transcript stays below the error so the batch is not lost.
            return Message(
                id=f"batch_error_{stamp}",
                sender=merged.sender,
                recipient=merged.recipient,
                content=f"Error: Failed to process batch - {exc}\n\n{merged.content}",
                timestamp=stamp,
                metadata={
                    "platform": platform,
                    "processed": "false",
                    "error": str(exc),
                    "original_message_count": str(len(real)),
                },
            )

        LOGGER.info("Processed batch of %s %s message(s) with one model call", len(real), platform)
        return Message(
            id=f"batch_{stamp}",
            sender=merged.sender,
            recipient=merged.recipient,
            content=content,
            timestamp=stamp,
            metadata={
                "platform": platform,
                "processed": "true",
                "processor": "llm_batch",
                "batch_processed": "true",
                "original_message_count": str(len(real)),
                "participants": merged.metadata["participants"],
                "time_range": merged.metadata["time_range"],
            },
        )
