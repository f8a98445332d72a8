"""Static configuration for courier.

User-editable settings (database location, supervisor cadence, language
model, logging) live in a single JSON file. Secrets (bot token, mail
passwords) come from the environment, optionally via a .env file.
"""

import json
import os

from dotenv import load_dotenv

from core.config import Credentials, LlmConfig, SupervisorConfig

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

load_dotenv(os.path.join(PROJECT_ROOT, ".env"))

# COURIER_CONFIG points at an alternative config file, e.g. for a second profile.
CONFIG_PATH = os.getenv("COURIER_CONFIG") or os.path.join(PROJECT_ROOT, "config.json")


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _project_path(path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Where to store the SQLite database holding workflows, cursors and state.
DB_PATH = _project_path(_CONFIG.get("db_path", "courier.db"))

# Lease file the supervisor keeps renewed while workflows run.
WAKE_LOCK_PATH = _project_path(_CONFIG.get("wake_lock_path", "run/supervisor.lease"))

# Supervisor cadence: keep-alive tick, wake lock renewal and the watchdog.
_supervisor = _CONFIG.get("supervisor", {})
SUPERVISOR_CONFIG = SupervisorConfig(
    tick_seconds=float(_supervisor.get("tick_seconds", 30)),
    wake_lock_renew_ticks=int(_supervisor.get("wake_lock_renew_ticks", 20)),
    wake_lock_lease_seconds=int(_supervisor.get("wake_lock_lease_seconds", 3600)),
    heartbeat_stale_seconds=float(_supervisor.get("heartbeat_stale_seconds", 120)),
    watchdog_interval_seconds=float(_supervisor.get("watchdog_interval_seconds", 60)),
    watchdog_initial_delay_seconds=float(_supervisor.get("watchdog_initial_delay_seconds", 30)),
    confirmation_timeout_seconds=float(_supervisor.get("confirmation_timeout_seconds", 45)),
)

# Local language model served by Ollama.
_llm = _CONFIG.get("llm", {})
LLM_CONFIG = LlmConfig(
    base_url=_llm.get("base_url", LlmConfig.base_url),
    model=_llm.get("model", LlmConfig.model),
    timeout_seconds=float(_llm.get("timeout_seconds", LlmConfig.timeout_seconds)),
    temperature=float(_llm.get("temperature", LlmConfig.temperature)),
    max_tokens=int(_llm.get("max_tokens", LlmConfig.max_tokens)),
)

# Bounded undo history for processing commands.
COMMAND_HISTORY_LIMIT = int(_CONFIG.get("command_history_limit", 100))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})


def _flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def credentials() -> Credentials:
    """Read backend secrets from the environment."""

    return Credentials(
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", ""),
        imap_host=os.getenv("IMAP_HOST", ""),
        imap_port=int(os.getenv("IMAP_PORT", "993")),
        imap_username=os.getenv("IMAP_USERNAME", ""),
        imap_password=os.getenv("IMAP_PASSWORD", ""),
        smtp_host=os.getenv("SMTP_HOST", ""),
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        smtp_username=os.getenv("SMTP_USERNAME", ""),
        smtp_password=os.getenv("SMTP_PASSWORD", ""),
        smtp_use_ssl=_flag("SMTP_USE_SSL"),
    )
