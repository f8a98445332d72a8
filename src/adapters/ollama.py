"""Local language model via the Ollama HTTP API.

Inference runs on the local machine; message content never leaves it.
"""

from __future__ import annotations

import logging
import re
from typing import Any

import requests

from core.config import LlmConfig
from core.errors import LanguageModelError

LOGGER = logging.getLogger(__name__)

_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL)


class OllamaLanguageModel:
    """Blocking completion client for a model served by Ollama."""

    def __init__(
        self,
        base_url: str = LlmConfig.base_url,
        model: str = LlmConfig.model,
        temperature: float = LlmConfig.temperature,
        max_tokens: int = LlmConfig.max_tokens,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_config(cls, config: LlmConfig) -> "OllamaLanguageModel":
        return cls(config.base_url, config.model, config.temperature, config.max_tokens)

    def is_available(self) -> bool:
        """Check if the Ollama server is running."""

        try:
            resp = requests.get(f"{self.base_url}/api/tags", timeout=2)
            return resp.status_code == 200
        except requests.RequestException:
            return False

    def complete(self, prompt: str, timeout: float) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
            },
        }

        try:
            resp = requests.post(f"{self.base_url}/api/generate", json=payload, timeout=timeout)
        except requests.Timeout as exc:
            raise LanguageModelError(f"LLM processing timed out after {timeout:g}s") from exc
        except requests.RequestException as exc:
            raise LanguageModelError(f"Ollama request failed: {exc}") from exc

        if resp.status_code != 200:
            LOGGER.error("Ollama generate failed: %s %s", resp.status_code, resp.text[:200])
            raise LanguageModelError(f"Ollama returned HTTP {resp.status_code}")

        try:
            text = resp.json().get("response", "")
        except ValueError as exc:
            raise LanguageModelError("Ollama returned a non-JSON response") from exc

        # Reasoning models prefix the answer with a think block.
        text = _THINK_RE.sub("", text).strip()
        if not text:
            raise LanguageModelError("LLM produced empty result")
        return text
