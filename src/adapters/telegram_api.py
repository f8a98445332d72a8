"""Minimal Telegram Bot API transport.

Both the Telegram source and destination talk to the Bot API through this
module; the endpoint is derived from the bot token.
"""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Mapping

from core.errors import CourierError

API_ROOT = "https://api.telegram.org"


class TelegramApiError(CourierError):
    """Raised when the Bot API rejects a request or cannot be reached."""


def endpoint(bot_token: str, method: str) -> str:
    return f"{API_ROOT}/bot{bot_token}/{method}"


def call(bot_token: str, method: str, payload: Mapping[str, Any], timeout: float = 10) -> Any:
    """POST a JSON payload to a Bot API method and return its `result`."""

    data = json.dumps(dict(payload)).encode("utf-8")
    request = urllib.request.Request(endpoint(bot_token, method), data=data, method="POST")
    request.add_header("Content-Type", "application/json")
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            body = json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as e:
        detail = e.read().decode("utf-8", errors="replace")
        raise TelegramApiError(f"Bot API error {e.code} on {method}: {detail}") from e
    except (urllib.error.URLError, TimeoutError, ValueError) as e:
        raise TelegramApiError(f"Bot API request {method} failed: {e}") from e

    if not body.get("ok"):
        raise TelegramApiError(f"Bot API {method} returned: {body.get('description', 'unknown error')}")
    return body.get("result")


def bot_id(bot_token: str) -> str:
    """The numeric prefix of a token identifies the bot."""

    return bot_token.split(":", 1)[0]
