"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and the app layer can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SupervisorConfig:
    """Cadences used by the background supervisor and its watchdog."""

    tick_seconds: float = 30.0
    wake_lock_renew_ticks: int = 20
    wake_lock_lease_seconds: int = 60 * 60
    heartbeat_stale_seconds: float = 120.0
    watchdog_interval_seconds: float = 60.0
    watchdog_initial_delay_seconds: float = 30.0
    confirmation_timeout_seconds: float = 45.0


@dataclass(frozen=True)
class LlmConfig:
    """Settings for the local language model used by the processor."""

    base_url: str = "http://localhost:11434"
    model: str = "qwen3:8b"
    timeout_seconds: float = 60.0
    temperature: float = 0.2
    max_tokens: int = 1024


@dataclass(frozen=True)
class Credentials:
    """Backend secrets, loaded from the environment by the settings module."""

    telegram_bot_token: str = ""
    imap_host: str = ""
    imap_port: int = 993
    imap_username: str = ""
    imap_password: str = ""
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_ssl: bool = False
