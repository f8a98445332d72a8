"""Application entry point for courier."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
import threading
import time
from logging.handlers import RotatingFileHandler
from typing import Callable, Optional

from art import tprint
from rich.console import Console
from rich.table import Table

import settings
from adapters.ollama import OllamaLanguageModel
from adapters.sqlite_store import SQLiteWorkflowStore
from adapters.wake_lock import LeaseWakeLock, lease_is_active, read_lease
from core.commands import CommandInvoker
from core.definitions import DEFAULT_TEMPLATES, WorkflowDefinition, parse_configuration
from core.errors import ConfigurationError
from core.models import now_millis
from core.runner import WorkflowRunner
from pipeline import WorkflowExecutor
from service.supervisor import DESIRED_STATE_KEY, HEARTBEAT_KEY, WorkflowSupervisor
from service.watchdog import Watchdog

NAME = "COURIER"
FONT = "tarty-1"

console = Console()


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/courier.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        file_handler = RotatingFileHandler(
            path,
            maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
            backupCount=int(file_cfg.get("backup_count", 5)),
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _store() -> SQLiteWorkflowStore:
    store = SQLiteWorkflowStore(settings.DB_PATH)
    store.init_db()
    return store


def _executor(store: SQLiteWorkflowStore) -> WorkflowExecutor:
    llm = OllamaLanguageModel.from_config(settings.LLM_CONFIG)
    if not llm.is_available():
        logging.getLogger(__name__).warning("Ollama is not reachable at %s", llm.base_url)
    return WorkflowExecutor(
        settings.credentials(),
        llm,
        cursor_store=store,
        llm_timeout=settings.LLM_CONFIG.timeout_seconds,
        invoker=CommandInvoker(settings.COMMAND_HISTORY_LIMIT),
    )


def _definition_or_exit(store: SQLiteWorkflowStore, workflow_id: str) -> WorkflowDefinition:
    definition = store.get(workflow_id)
    if definition is None:
        console.print(f"[red]No workflow with id {workflow_id}[/red]")
        sys.exit(1)
    return definition


def _supervisor_alive(store: SQLiteWorkflowStore) -> bool:
    heartbeat = store.get_state(HEARTBEAT_KEY)
    if not heartbeat:
        return False
    age = (now_millis() - int(heartbeat)) / 1000
    return age <= settings.SUPERVISOR_CONFIG.heartbeat_stale_seconds


def _run() -> None:
    _print_banner()
    _configure_logging()
    logger = logging.getLogger(__name__)
    logger.info("Starting courier supervisor")

    store = _store()
    config = settings.SUPERVISOR_CONFIG
    supervisor = WorkflowSupervisor(
        store,
        _executor(store),
        LeaseWakeLock(settings.WAKE_LOCK_PATH),
        config=config,
    )
    watchdog = Watchdog(supervisor, config.watchdog_interval_seconds, config.watchdog_initial_delay_seconds)

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    supervisor.start()
    watchdog.start()
    logger.info("Supervisor running. Press Ctrl+C to stop.")
    while not stop.wait(1):
        pass

    watchdog.stop()
    supervisor.stop()
    logger.info("Courier stopped")


def _list() -> None:
    table = Table(title="Workflows")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Interval")
    table.add_column("Running")
    table.add_column("Last run")
    for definition in _store().list():
        last_run = (
            time.strftime("%Y-%m-%d %H:%M", time.localtime(definition.last_run_at / 1000))
            if definition.last_run_at
            else "never"
        )
        table.add_row(
            definition.id,
            definition.name,
            definition.type.display_name,
            f"{definition.interval_seconds}s",
            "[green]yes[/green]" if definition.is_running else "no",
            last_run,
        )
    console.print(table)


def _add(path: str) -> None:
    with open(path, "r", encoding="utf-8") as handle:
        data = json.load(handle)
    try:
        configuration = parse_configuration(data["type"], data.get("configuration", {}))
        definition = WorkflowDefinition.new(
            name=data.get("name", ""),
            configuration=configuration,
            interval_seconds=int(data.get("interval_seconds", 300)),
            description=data.get("description", ""),
        )
    except (KeyError, ConfigurationError) as exc:
        console.print(f"[red]Invalid workflow: {exc}[/red]")
        sys.exit(1)
    _store().create(definition)
    console.print(f"Added workflow [bold]{definition.name}[/bold] with id {definition.id}")


def _templates(as_json: bool) -> None:
    if as_json:
        documents = [
            {
                "name": template.name,
                "description": template.description,
                "type": template.configuration.kind.value,
                "interval_seconds": template.interval_seconds,
                "configuration": template.configuration.to_dict(),
            }
            for template in DEFAULT_TEMPLATES
        ]
        console.print_json(json.dumps(documents))
        return

    table = Table(title="Workflow templates")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Interval")
    table.add_column("Description")
    for template in DEFAULT_TEMPLATES:
        table.add_row(
            template.name,
            template.configuration.kind.display_name,
            f"{template.interval_seconds}s",
            template.description,
        )
    console.print(table)
    console.print("Use [bold]courier templates --json[/bold] for files accepted by [bold]courier add[/bold].")


def _remove(workflow_id: str) -> None:
    store = _store()
    definition = _definition_or_exit(store, workflow_id)
    if definition.is_running:
        console.print("[red]Stop the workflow before removing it.[/red]")
        sys.exit(1)
    store.delete(workflow_id)
    console.print(f"Removed workflow {definition.name}")


def _wait_for_supervisor(
    store: SQLiteWorkflowStore,
    workflow_id: str,
    confirmed: Callable[[WorkflowDefinition], bool],
    status: str,
) -> Optional[WorkflowDefinition]:
    deadline = time.monotonic() + settings.SUPERVISOR_CONFIG.confirmation_timeout_seconds
    with console.status(status):
        while time.monotonic() < deadline:
            current = store.get(workflow_id)
            if current is not None and confirmed(current):
                return current
            time.sleep(1)
    return None


def _request(workflow_id: str, action: str) -> None:
    """Queue a control request and wait for the supervisor to confirm it."""

    store = _store()
    definition = _definition_or_exit(store, workflow_id)
    want_running = action == "start"
    if definition.is_running == want_running:
        console.print(f"Workflow {definition.name} is already {'running' if want_running else 'stopped'}")
        return

    store.enqueue_request(workflow_id, action)
    if not _supervisor_alive(store):
        console.print("Supervisor is not running; the request applies when [bold]courier run[/bold] starts.")
        return

    current = _wait_for_supervisor(
        store,
        workflow_id,
        lambda d: d.is_running == want_running,
        f"Waiting for the supervisor to {action} {definition.name}...",
    )
    if current is None:
        console.print("[yellow]No confirmation yet; the request stays queued.[/yellow]")
        return
    console.print(f"Workflow {definition.name} {'started' if want_running else 'stopped'}")


def _run_once(workflow_id: str) -> None:
    """Run one iteration through the supervisor, or locally when none is alive."""

    _configure_logging()
    store = _store()
    definition = _definition_or_exit(store, workflow_id)

    if _supervisor_alive(store):
        store.enqueue_request(workflow_id, "run_once")
        current = _wait_for_supervisor(
            store,
            workflow_id,
            lambda d: d.last_run_at != definition.last_run_at,
            f"Waiting for the supervisor to run {definition.name}...",
        )
        if current is None:
            console.print("[yellow]No confirmation yet; the request stays queued.[/yellow]")
        else:
            console.print(f"Workflow {definition.name} ran; see the supervisor log for the result.")
        return

    runner = WorkflowRunner(_executor(store), store)
    result = asyncio.run(runner.run_once(definition))
    style = "green" if result.success else "red"
    console.print(f"[{style}]{result.message}[/{style}] ({result.processed_message_count} messages)")
    if result.error and not result.success:
        console.print(f"Error: {result.error}")
        sys.exit(1)


def _preview(workflow_id: str) -> None:
    _configure_logging()
    store = _store()
    definition = _definition_or_exit(store, workflow_id)
    executor = _executor(store)
    text = executor.preview(definition)
    if text is None:
        console.print("Nothing to preview (no new messages or processing failed).")
        return
    console.rule(definition.name)
    console.print(text)


def _status() -> None:
    store = _store()
    lease = read_lease(settings.WAKE_LOCK_PATH)
    heartbeat = store.get_state(HEARTBEAT_KEY)
    running = [definition for definition in store.list() if definition.is_running]

    table = Table(title="Supervisor status", show_header=False)
    table.add_row("Alive", "[green]yes[/green]" if _supervisor_alive(store) else "[red]no[/red]")
    table.add_row("Desired state", store.get_state(DESIRED_STATE_KEY) or "unknown")
    table.add_row(
        "Last heartbeat",
        f"{(now_millis() - int(heartbeat)) / 1000:.0f}s ago" if heartbeat else "never",
    )
    table.add_row("Wake lock", "held" if lease_is_active(lease) else "released")
    table.add_row("Running workflows", str(len(running)))
    console.print(table)


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="courier")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the supervisor and keep workflows running")
    subparsers.add_parser("list", help="List stored workflows")
    add = subparsers.add_parser("add", help="Add a workflow from a JSON file")
    add.add_argument("file")
    templates = subparsers.add_parser("templates", help="Show built-in workflow templates")
    templates.add_argument("--json", action="store_true", help="Print templates as JSON")
    for name, help_text in (
        ("remove", "Delete a stopped workflow"),
        ("start", "Ask the supervisor to start a workflow"),
        ("stop", "Ask the supervisor to stop a workflow"),
        ("run-once", "Run one iteration of a workflow now"),
        ("preview", "Fetch and process without delivering"),
    ):
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument("workflow_id")
    subparsers.add_parser("status", help="Show supervisor status")

    args = parser.parse_args(argv)
    if args.command == "list":
        _list()
    elif args.command == "add":
        _add(args.file)
    elif args.command == "templates":
        _templates(args.json)
    elif args.command == "remove":
        _remove(args.workflow_id)
    elif args.command in {"start", "stop"}:
        _request(args.workflow_id, args.command)
    elif args.command == "run-once":
        _run_once(args.workflow_id)
    elif args.command == "preview":
        _preview(args.workflow_id)
    elif args.command == "status":
        _status()
    else:
        _run()


if __name__ == "__main__":
    main()
