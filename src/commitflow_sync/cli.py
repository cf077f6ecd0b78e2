#!/usr/bin/env python3
"""
CommitFlow Sync CLI

Operator commands for inspecting and draining the durable operation queue.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from . import __version__
from .config import SyncConfig, get_config_paths, load_configuration
from .core.api_client import HttpRemoteApi
from .core.engine import SyncEngine
from .core.errors import QueueFullError, SyncError
from .core.queue_store import DeadLetterStore, DurableQueueStore
from .core.storage import FileStorage


def _setup_logging(level: str) -> None:
    from rich.logging import RichHandler

    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        handlers=[RichHandler(show_path=False)],
    )


def _load(args: Any) -> SyncConfig:
    config = load_configuration()
    if getattr(args, "storage_dir", None):
        config.storage_dir = args.storage_dir
    if getattr(args, "api_url", None):
        config.api_base_url = args.api_url
    return config


def _short(value: Optional[str], limit: int = 48) -> str:
    if not value:
        return ""
    return value if len(value) <= limit else value[: limit - 1] + "…"


async def _read_stores(config: SyncConfig):
    storage = FileStorage(Path(config.storage_dir))
    queue = DurableQueueStore(storage, max_depth=config.max_queue_depth)
    dead_letters = DeadLetterStore(storage)
    await queue.load()
    await dead_letters.load()
    return queue, dead_letters


def _build_engine(config: SyncConfig) -> SyncEngine:
    api = HttpRemoteApi(
        config.api_base_url,
        token_provider=lambda refresh: config.api_token,
        timeout=config.request_timeout_seconds,
    )
    return SyncEngine(api, FileStorage(Path(config.storage_dir)), config)


def commitflow_status(args: Any) -> int:
    """Show pending and dead-lettered operations"""
    from rich.console import Console
    from rich.table import Table

    console = Console()
    config = _load(args)

    try:
        queue, dead_letters = asyncio.run(_read_stores(config))
    except SyncError as e:
        console.print(f"❌ Failed to read sync state: {e}")
        return 1

    console.print("🔍 [bold blue]CommitFlow Sync Status[/bold blue]")
    console.print(f"Storage: {config.storage_dir}")
    console.print(f"Pending operations: {len(queue)}/{queue.max_depth}")
    console.print(f"Dead-lettered operations: {len(dead_letters)}")

    if len(queue):
        table = Table(title="Pending Operations")
        table.add_column("Operation", style="cyan", overflow="fold")
        table.add_column("Kind", style="bold")
        table.add_column("Retries", justify="right")
        table.add_column("Last Error", style="dim")

        for operation in queue.snapshot():
            table.add_row(
                operation.id,
                operation.kind.value,
                str(operation.retry_count),
                _short(operation.last_error),
            )
        console.print(table)
    else:
        console.print("✅ Queue is empty")

    return 0


def commitflow_flush(args: Any) -> int:
    """Run one flush batch against the configured API"""
    from rich.console import Console

    console = Console()
    config = _load(args)

    async def run():
        engine = _build_engine(config)
        try:
            await engine.load()
            return await engine.attempt_flush()
        finally:
            await engine.api.aclose()

    console.print(f"🔄 Flushing queue to {config.api_base_url}")
    report = asyncio.run(run())
    if report is None:
        console.print("⚠️ A flush is already running")
        return 1

    console.print(
        f"Synced: {report.succeeded}  Retried: {report.retried}  "
        f"Dead-lettered: {report.dead_lettered}  Remaining: {report.remaining}"
    )
    for error in report.errors:
        console.print(f"  ❌ {_short(error, 120)}")

    if report.deferred:
        console.print("⏸️ Next operation is waiting for a workspace or dependency")
    return 0 if not report.retried else 2


def commitflow_dead_letter(args: Any) -> int:
    """Inspect and manage dead-lettered operations"""
    from rich.console import Console
    from rich.table import Table

    console = Console()
    config = _load(args)

    if args.action == "list":
        _, dead_letters = asyncio.run(_read_stores(config))
        records = dead_letters.records()
        if not records:
            console.print("✅ No dead-lettered operations")
            return 0

        console.print(f"Dead-lettered operations: {len(records)}")
        table = Table(title="Dead Letters")
        table.add_column("Operation", style="cyan", overflow="fold")
        table.add_column("Kind", style="bold")
        table.add_column("Reason")
        table.add_column("Retries", justify="right")
        table.add_column("Error", style="dim")
        for record in records:
            table.add_row(
                record.operation.id,
                record.operation.kind.value,
                record.reason.value,
                str(record.retry_count),
                _short(record.error),
            )
        console.print(table)
        return 0

    if args.action == "requeue":

        async def requeue():
            engine = _build_engine(config)
            try:
                await engine.load()
                return await engine.requeue_dead_letter(args.operation_id)
            finally:
                await engine.api.aclose()

        try:
            operation = asyncio.run(requeue())
        except QueueFullError as e:
            console.print(f"❌ {e}")
            return 1

        if operation is None:
            console.print(f"❌ No dead-lettered operation with id {args.operation_id}")
            return 1
        console.print(f"✅ Requeued {operation.kind.value} ({operation.id})")
        return 0

    if args.action == "clear":

        async def clear():
            _, dead_letters = await _read_stores(config)
            return await dead_letters.clear()

        count = asyncio.run(clear())
        console.print(f"🗑️ Removed {count} dead-lettered operations")
        return 0

    console.print("❌ Unknown dead-letter action")
    return 1


def commitflow_config(args: Any) -> int:
    """Show the effective configuration"""
    from rich.console import Console
    from rich.table import Table

    console = Console()
    config = _load(args)
    config_paths = get_config_paths()

    console.print("📋 [bold blue]Current Configuration[/bold blue]")

    sources = Table(title="Configuration Sources")
    sources.add_column("Source", style="cyan")
    sources.add_column("File", style="dim")
    sources.add_column("Exists", style="bold")
    for name in ("user", "project"):
        path = config_paths[name]
        sources.add_row(name.title(), str(path), "✅" if path.exists() else "❌")
    sources.add_row("Environment", "COMMITFLOW_* variables", "✅ Active")
    console.print(sources)

    settings = Table(title="Active Settings")
    settings.add_column("Setting", style="cyan")
    settings.add_column("Value", style="bold", overflow="fold")
    for key, value in config.to_dict().items():
        settings.add_row(key, "" if value is None else str(value))
    console.print(settings)

    problems = config.validate()
    for problem in problems:
        console.print(f"⚠️ {problem}")
    return 1 if problems else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="commitflow-sync",
        description="CommitFlow offline sync queue tools",
    )
    parser.add_argument(
        "--version", action="version", version=f"commitflow-sync {__version__}"
    )
    parser.add_argument("--storage-dir", help="Directory holding the queue files")
    parser.add_argument("--api-url", help="CommitFlow API base URL")
    parser.add_argument("--log-level", help="Logging level (default from config)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("status", help="Show pending and dead-lettered operations")
    subparsers.add_parser("flush", help="Run one flush batch now")

    dead_letter = subparsers.add_parser(
        "dead-letter", help="Manage dead-lettered operations"
    )
    dead_letter_actions = dead_letter.add_subparsers(
        dest="action", help="Dead-letter actions"
    )
    dead_letter_actions.add_parser("list", help="List dead-lettered operations")
    requeue = dead_letter_actions.add_parser(
        "requeue", help="Move an operation back to the queue"
    )
    requeue.add_argument("operation_id", help="Operation id to requeue")
    dead_letter_actions.add_parser("clear", help="Delete all dead-lettered operations")

    config_parser = subparsers.add_parser("config", help="Inspect configuration")
    config_actions = config_parser.add_subparsers(dest="action", help="Config actions")
    config_actions.add_parser("show", help="Show current configuration")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI with subcommands"""
    parser = build_parser()
    args = parser.parse_args(argv)

    _setup_logging(args.log_level or load_configuration().log_level)

    if args.command == "status":
        return commitflow_status(args)
    if args.command == "flush":
        return commitflow_flush(args)
    if args.command == "dead-letter":
        if not args.action:
            args.action = "list"
        return commitflow_dead_letter(args)
    if args.command == "config":
        return commitflow_config(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
