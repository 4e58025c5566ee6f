"""CLI for the relay.

Runs the Telegram front-end and offers a few maintenance commands for
paused tasks and the process lock.
"""

import asyncio
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import click
from rich.console import Console
from rich.table import Table
from telegram import Bot

from relay.bot import serve
from relay.config import get_settings
from relay.errors import ConfigError, RelayError
from relay.lock import ProcessLock
from relay.logging_setup import configure_logging
from relay.models import TaskStatus
from relay.store import SupabaseStore
from relay.task_store import TaskRepository, utcnow
from relay.tasks import CANCEL_TOKEN, NO_ACTIVE_TASKS_TEXT, TaskEngine
from relay.telegram import TelegramTransport

console = Console()


@click.group()
@click.version_option(package_name="telegram-relay")
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
def cli(log_level: str | None) -> None:
    """Relay - Telegram front-end for a human-in-the-loop Claude agent."""
    settings = get_settings()
    configure_logging(level=log_level or settings.log_level, log_dir=settings.log_dir)


@cli.command()
def run() -> None:
    """Start the relay and serve messages until interrupted."""
    try:
        exit_code = asyncio.run(serve(get_settings()))
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(2)
    if exit_code:
        console.print("[red]Another relay instance is running.[/red]")
    sys.exit(exit_code)


@asynccontextmanager
async def _task_engine() -> AsyncIterator[TaskEngine]:
    settings = get_settings()
    async with SupabaseStore.from_settings(settings) as store:
        async with Bot(settings.telegram_bot_token) as bot:
            yield TaskEngine(TaskRepository(store), TelegramTransport(bot))


@cli.command()
@click.argument("chat_id")
def tasks(chat_id: str) -> None:
    """List running and waiting tasks for a chat."""
    try:
        asyncio.run(_show_tasks(chat_id))
    except RelayError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


async def _show_tasks(chat_id: str) -> None:
    settings = get_settings()
    async with SupabaseStore.from_settings(settings) as store:
        active = await TaskRepository(store).list_active(chat_id)

    if not active:
        console.print(NO_ACTIVE_TASKS_TEXT)
        return

    now = utcnow()
    table = Table(title=f"Active tasks for chat {chat_id}")
    table.add_column("ID", style="dim")
    table.add_column("Status")
    table.add_column("Age", justify="right")
    table.add_column("Prompt / question")
    for task in active:
        age = f"{int((now - task.created_at).total_seconds() // 60)}m" if task.created_at else "-"
        waiting = task.status == TaskStatus.NEEDS_INPUT
        detail = task.pending_question if waiting and task.pending_question else task.original_prompt
        status = f"[yellow]{task.status.value}[/yellow]" if waiting else task.status.value
        table.add_row(task.id, status, age, detail[:80])
    console.print(table)


@cli.command()
@click.argument("task_id")
def cancel(task_id: str) -> None:
    """Cancel a running task or one waiting for input."""
    try:
        outcome = asyncio.run(_cancel(task_id))
    except RelayError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if outcome.kind == "cancelled":
        console.print(f"[green]Task {task_id} cancelled[/green]")
    else:
        console.print(f"[yellow]{outcome.message}[/yellow]")
        sys.exit(1)


async def _cancel(task_id: str):
    async with _task_engine() as engine:
        return await engine.handle_choice(task_id, CANCEL_TOKEN)


@cli.command()
@click.argument("chat_id")
@click.option(
    "--threshold-seconds",
    type=int,
    default=None,
    help="Remind tasks waiting longer than this (default: STALE_TASK_THRESHOLD_SECONDS)",
)
def remind(chat_id: str, threshold_seconds: int | None) -> None:
    """Send reminders for stale paused tasks once."""
    threshold = threshold_seconds
    if threshold is None:
        threshold = get_settings().stale_task_threshold_seconds
    try:
        sent = asyncio.run(_remind(chat_id, threshold))
    except RelayError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(f"Sent {sent} reminder(s)")


async def _remind(chat_id: str, threshold_seconds: int) -> int:
    async with _task_engine() as engine:
        return await engine.remind_stale(chat_id, threshold_seconds=threshold_seconds)


@cli.command("lock-status")
def lock_status() -> None:
    """Show which process holds the relay lock."""
    settings = get_settings()
    lock = ProcessLock(settings.lock_path, stale_after_seconds=settings.lock_stale_seconds)
    try:
        holder = lock.read()
    except OSError as e:
        console.print(f"[red]Cannot read lock:[/red] {e}")
        sys.exit(1)

    if holder is None:
        console.print(f"No lock at {settings.lock_path}")
        return

    age = holder.age_seconds(utcnow())
    state = "[red]stale[/red]" if age >= settings.lock_stale_seconds else "[green]live[/green]"
    console.print(f"PID {holder.pid}, heartbeat {age:.0f}s ago ({state})")


if __name__ == "__main__":
    cli()
