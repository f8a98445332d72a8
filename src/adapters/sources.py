"""Message sources.

Sources turn backend payloads into standardized messages. They never raise:
errors are logged and the caller receives the empty sentinel, so the rest of
the pipeline does not branch on absence.
"""

from __future__ import annotations

import email
import html
import imaplib
import json
import logging
import re
import threading
from email import policy
from email.message import EmailMessage
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from adapters import telegram_api
from core.models import Message, empty_message, now_millis
from core.ports import CursorStore

LOGGER = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")

# Cap on updates kept for chats no running workflow reads.
MAX_PARKED_UPDATES = 1000

# Readers of one bot share its offset and parked updates.
_PARKED_LOCK = threading.Lock()


def _unique(messages: Iterable[Message]) -> List[Message]:
    seen: set[str] = set()
    unique: List[Message] = []
    for message in messages:
        if message.id in seen:
            LOGGER.debug("Dropping duplicate message id %s", message.id)
            continue
        seen.add(message.id)
        unique.append(message)
    return unique


class TelegramSource:
    """Reads chat messages sent to a bot through getUpdates.

    Telegram confirms updates once a later offset is requested, and the
    offset is shared by every reader of the same bot. Updates for a chat
    other than this source's filter are therefore parked in the cursor store
    until a source for that chat reads them. With consume=False nothing is
    persisted, so the same updates are returned again on the next fetch.
    """

    platform = "telegram"

    def __init__(
        self,
        bot_token: str,
        cursor_store: Optional[CursorStore] = None,
        chat_id: Optional[str] = None,
        timeout: float = 10,
        consume: bool = True,
    ) -> None:
        self._bot_token = bot_token
        self._cursor_store = cursor_store
        self._chat_id = str(chat_id) if chat_id else None
        self._timeout = timeout
        self._consume = consume
        bot = telegram_api.bot_id(bot_token)
        self._cursor_key = f"telegram:{bot}"
        self._parked_key = f"telegram:{bot}:parked"
        self._offset: Optional[int] = None
        self._parked: List[Dict[str, Any]] = []

    def _load_offset(self) -> Optional[int]:
        if self._cursor_store is not None:
            stored = self._cursor_store.get_cursor(self._cursor_key)
            return int(stored) if stored else None
        return self._offset

    def _save_offset(self, offset: int) -> None:
        self._offset = offset
        if self._cursor_store is not None:
            self._cursor_store.set_cursor(self._cursor_key, str(offset))

    def _load_parked(self) -> List[Dict[str, Any]]:
        if self._cursor_store is None:
            return list(self._parked)
        stored = self._cursor_store.get_cursor(self._parked_key)
        return json.loads(stored) if stored else []

    def _save_parked(self, updates: List[Dict[str, Any]]) -> None:
        if len(updates) > MAX_PARKED_UPDATES:
            LOGGER.warning("Dropping %s parked Telegram update(s) no workflow read", len(updates) - MAX_PARKED_UPDATES)
            updates = updates[-MAX_PARKED_UPDATES:]
        self._parked = list(updates)
        if self._cursor_store is not None:
            self._cursor_store.set_cursor(self._parked_key, json.dumps(updates))

    def _get_updates(self, limit: int) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {
            "limit": min(limit, 100),
            "timeout": 0,
            "allowed_updates": ["message", "channel_post"],
        }
        offset = self._load_offset()
        if offset is not None:
            payload["offset"] = offset
        return telegram_api.call(self._bot_token, "getUpdates", payload, timeout=self._timeout) or []

    def _wanted(self, message: Message) -> bool:
        return not self._chat_id or message.metadata.get("chat_id") == self._chat_id

    def _to_message(self, update: Dict[str, Any]) -> Optional[Message]:
        post = update.get("message") or update.get("channel_post")
        if not post:
            return None
        text = post.get("text") or post.get("caption")
        if not text:
            return None

        chat = post.get("chat", {})
        chat_id = str(chat.get("id", ""))
        author = post.get("from") or {}
        name = " ".join(part for part in (author.get("first_name"), author.get("last_name")) if part)
        sender = name or author.get("username") or chat.get("title") or "Unknown"
        metadata = {
            "platform": self.platform,
            "chat_id": chat_id,
            "chat_type": chat.get("type", "unknown"),
            "message_id": str(post.get("message_id", "")),
            "update_id": str(update.get("update_id", "")),
        }
        if author.get("username"):
            metadata["sender_username"] = author["username"]
        if chat.get("title"):
            metadata["chat_title"] = chat["title"]

        return Message(
            id=f"{chat_id}_{post.get('message_id')}",
            sender=sender,
            recipient=chat_id or "unknown",
            content=text,
            timestamp=int(post.get("date", 0)) * 1000 or now_millis(),
            metadata=metadata,
        )

    def _collect(self, count: int) -> List[Message]:
        parked = self._load_parked()
        fetched = self._get_updates(count)

        taken: List[Message] = []
        seen: set[str] = set()
        keep: List[Dict[str, Any]] = []
        # Parked updates are older than anything fetched now.
        for update in parked + fetched:
            message = self._to_message(update)
            if message is None:
                continue
            if not self._wanted(message) or len(taken) >= count:
                keep.append(update)
            elif message.id in seen:
                LOGGER.debug("Dropping duplicate message id %s", message.id)
            else:
                seen.add(message.id)
                taken.append(message)

        if self._consume:
            self._save_parked(keep)
            if fetched:
                self._save_offset(max(int(update["update_id"]) for update in fetched) + 1)
        return taken

    def fetch_many(self, count: int) -> List[Message]:
        if count <= 0:
            LOGGER.warning("Ignoring Telegram fetch of %s messages", count)
            return [empty_message(self.platform)]
        try:
            with _PARKED_LOCK:
                messages = self._collect(count)
        except Exception:
            LOGGER.exception("Failed to fetch Telegram updates")
            return [empty_message(self.platform)]

        if not messages:
            return [empty_message(self.platform)]
        LOGGER.info("Fetched %s Telegram message(s)", len(messages))
        return messages

    def fetch_one(self) -> Message:
        return self.fetch_many(1)[0]


def _message_body(mail: EmailMessage) -> str:
    part = mail.get_body(preferencelist=("plain", "html"))
    if part is None:
        return ""
    content = part.get_content()
    if part.get_content_subtype() == "html":
        content = html.unescape(_TAG_RE.sub(" ", content))
        content = re.sub(r"[ \t]+", " ", content)
    return content.strip()


def _message_timestamp(value: Optional[str]) -> int:
    if not value:
        return now_millis()
    try:
        return int(parsedate_to_datetime(value).timestamp() * 1000)
    except (TypeError, ValueError):
        return now_millis()


class EmailSource:
    """Fetches the newest messages matching an IMAP search query.

    Fetching RFC822 marks a message as seen, so the default UNSEEN query
    consumes each email once. With consume=False the body is fetched with
    BODY.PEEK[] and the flags stay untouched.
    """

    platform = "email"

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        port: int = 993,
        search_query: str = "UNSEEN",
        mailbox: str = "INBOX",
        client_factory: Optional[Callable[[], imaplib.IMAP4]] = None,
        consume: bool = True,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._search_query = search_query
        self._mailbox = mailbox
        self._client_factory = client_factory or (lambda: imaplib.IMAP4_SSL(self._host, self._port))
        self._fetch_part = "(RFC822)" if consume else "(BODY.PEEK[])"

    def _fetch_raw(self, count: int) -> List[tuple[bytes, bytes]]:
        client = self._client_factory()
        try:
            client.login(self._username, self._password)
            client.select(self._mailbox)
            status, data = client.search(None, self._search_query)
            if status != "OK":
                raise imaplib.IMAP4.error(f"IMAP search failed: {status}")
            ids = data[0].split() if data and data[0] else []
            raw: List[tuple[bytes, bytes]] = []
            for num in ids[-count:]:
                status, parts = client.fetch(num, self._fetch_part)
                if status != "OK":
                    LOGGER.warning("IMAP fetch of %s failed: %s", num, status)
                    continue
                for part in parts:
                    if isinstance(part, tuple):
                        raw.append((num, part[1]))
            return raw
        finally:
            try:
                client.logout()
            except (imaplib.IMAP4.error, OSError):
                LOGGER.debug("IMAP logout failed", exc_info=True)

    def _to_message(self, num: bytes, raw: bytes) -> Message:
        mail = email.message_from_bytes(raw, policy=policy.default)
        message_id = (mail.get("Message-ID") or "").strip() or f"imap_{num.decode()}"
        subject = str(mail.get("Subject") or "")
        return Message(
            id=message_id,
            sender=str(mail.get("From") or "Unknown"),
            recipient=str(mail.get("To") or self._username),
            content=_message_body(mail),
            timestamp=_message_timestamp(mail.get("Date")),
            metadata={
                "platform": self.platform,
                "subject": subject,
                "mailbox": self._mailbox,
                "imap_id": num.decode(),
            },
        )

    def fetch_many(self, count: int) -> List[Message]:
        if count <= 0:
            LOGGER.warning("Ignoring email fetch of %s messages", count)
            return [empty_message(self.platform)]
        try:
            raw = self._fetch_raw(count)
            messages = _unique(self._to_message(num, body) for num, body in raw)
        except Exception:
            LOGGER.exception("Failed to fetch email from %s", self._host)
            return [empty_message(self.platform)]

        if not messages:
            return [empty_message(self.platform)]
        LOGGER.info("Fetched %s email(s) matching %s", len(messages), self._search_query)
        return messages

    def fetch_one(self) -> Message:
        return self.fetch_many(1)[0]
