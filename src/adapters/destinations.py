"""Message destinations.

Every destination shares the same delivery rules. A single message uses the
per-message format. Several messages are rendered once with the batch format
and delivered as one payload. Delivery failures are logged and reported as
False; they never escape send_one or send_many.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import List, Optional, Sequence

from adapters import telegram_api
from adapters.formatting import EmailFormatter, TelegramFormatter
from core.models import Message
from core.ports import OutputFormatter

LOGGER = logging.getLogger(__name__)

TELEGRAM_MAX_MESSAGE_LENGTH = 4096


class BaseDestination:
    """Implements send_one/send_many on top of a single _deliver hook."""

    def __init__(self, formatter: OutputFormatter) -> None:
        self._formatter = formatter

    @property
    def formatter(self) -> OutputFormatter:
        return self._formatter

    def _deliver(self, payload: str, messages: Sequence[Message]) -> None:
        raise NotImplementedError

    def send_one(self, message: Message) -> bool:
        if message.is_empty:
            LOGGER.info("Nothing to deliver: %s", message.content)
            return True
        try:
            self._deliver(self._formatter.format_one(message), [message])
        except Exception:
            LOGGER.exception("Failed to deliver message %s via %s", message.id, type(self).__name__)
            return False
        return True

    def send_many(self, messages: Sequence[Message]) -> List[bool]:
        if not messages:
            return []
        if len(messages) == 1:
            return [self.send_one(messages[0])]

        deliverable = [message for message in messages if not message.is_empty]
        if not deliverable:
            LOGGER.info("Nothing to deliver: %s empty messages", len(messages))
            return [True] * len(messages)
        try:
            self._deliver(self._formatter.format_batch(deliverable), deliverable)
            success = True
        except Exception:
            LOGGER.exception("Failed to deliver batch of %s via %s", len(deliverable), type(self).__name__)
            success = False
        return [success] * len(messages)


def split_text(text: str, limit: int = TELEGRAM_MAX_MESSAGE_LENGTH) -> List[str]:
    """Split on line boundaries where possible so each chunk fits the limit."""

    if len(text) <= limit:
        return [text]
    chunks: List[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        if len(current) + len(line) > limit:
            chunks.append(current)
            current = ""
        current += line
    if current:
        chunks.append(current)
    return chunks


class TelegramDestination(BaseDestination):
    """Posts to a chat through the Bot API sendMessage method."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        formatter: Optional[OutputFormatter] = None,
        timeout: float = 10,
    ) -> None:
        super().__init__(formatter or TelegramFormatter())
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._timeout = timeout

    def _deliver(self, payload: str, messages: Sequence[Message]) -> None:
        parse_mode = getattr(self._formatter, "parse_mode", None)
        for chunk in split_text(payload):
            request = {
                "chat_id": self._chat_id,
                "text": chunk,
                "disable_web_page_preview": True,
            }
            if parse_mode:
                request["parse_mode"] = parse_mode
            telegram_api.call(self._bot_token, "sendMessage", request, timeout=self._timeout)
        LOGGER.info("Sent %s message(s) to Telegram chat %s", len(messages), self._chat_id)


def email_subject(message: Message) -> str:
    platform = message.platform
    if platform == "telegram":
        return f"Telegram Message Summary from {message.sender}"
    if platform in {"email", "gmail"}:
        return f"Processed Email: {message.metadata.get('subject') or 'No Subject'}"
    return f"Automated Message from {message.sender}"


def batch_subject(messages: Sequence[Message]) -> str:
    platform = messages[0].platform
    if platform == "telegram":
        return f"Telegram Conversation Summary ({len(messages)} messages)"
    if platform in {"email", "gmail"}:
        return f"Processed Emails ({len(messages)})"
    return f"Automated Messages ({len(messages)})"


class EmailDestination(BaseDestination):
    """Sends HTML mail with a plain-text alternative over SMTP."""

    def __init__(
        self,
        recipients: Sequence[str],
        sender: str,
        host: str,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_ssl: bool = False,
        formatter: Optional[OutputFormatter] = None,
        timeout: float = 30,
    ) -> None:
        super().__init__(formatter or EmailFormatter())
        self._recipients = list(recipients)
        self._sender = sender
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._use_ssl = use_ssl
        self._timeout = timeout

    def _compose(self, payload: str, messages: Sequence[Message]) -> EmailMessage:
        mail = EmailMessage()
        mail["From"] = self._sender
        mail["To"] = ", ".join(self._recipients)
        mail["Date"] = formatdate(localtime=True)
        mail["Message-ID"] = make_msgid()
        mail["Subject"] = email_subject(messages[0]) if len(messages) == 1 else batch_subject(messages)

        if getattr(self._formatter, "content_type", "plain") == "html":
            mail.set_content("\n\n".join(message.content for message in messages))
            mail.add_alternative(payload, subtype="html")
        else:
            mail.set_content(payload)
        return mail

    def _connect(self) -> smtplib.SMTP:
        if self._use_ssl:
            return smtplib.SMTP_SSL(self._host, self._port, timeout=self._timeout)
        smtp = smtplib.SMTP(self._host, self._port, timeout=self._timeout)
        try:
            smtp.starttls()
        except Exception:
            smtp.close()
            raise
        return smtp

    def _deliver(self, payload: str, messages: Sequence[Message]) -> None:
        mail = self._compose(payload, messages)
        with self._connect() as smtp:
            if self._username:
                smtp.login(self._username, self._password or "")
            smtp.send_message(mail)
        LOGGER.info("Emailed %s message(s) to %s", len(messages), ", ".join(self._recipients))
