# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Shared plumbing of the pg-guard command line tools.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, List, NoReturn, Sequence, Tuple

import structlog
import typer
from rich.console import Console
from rich.table import Table

from pgguard.backup.restore import RestoreOutcome, RestoreSession
from pgguard.config import PgGuardConfig
from pgguard.core import Runtime, initialize_runtime, shutdown_runtime
from pgguard.env import create_config_from_env
from pgguard.errors import (
    explain_not_root,
    explain_postgres_inactive,
    explain_unknown_selection,
)
from pgguard.exceptions import PgGuardError
from pgguard.logconfig import configure_logging
from pgguard.postgres.probe import admin_credentials, admin_endpoint
from pgguard.vault.store import BackupArtifact

logger = structlog.get_logger()

console = Console()

LIST_DATABASES_SQL = (
    "SELECT datname FROM pg_database "
    "WHERE datistemplate = false AND datname <> 'postgres' ORDER BY datname"
)


def fail(message: str, code: int = 1) -> NoReturn:
    """Print an error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=code)


def setup(default_log_file: Path) -> PgGuardConfig:
    """
    Load the configuration, configure logging and run the privilege check.

    Args:
        default_log_file: Durable log of the calling tool, unless
                          PGGUARD_LOG_FILE says otherwise
    """
    try:
        config = create_config_from_env(log_file=default_log_file)
    except PgGuardError as e:
        fail(str(e))

    configure_logging(config.log_file)

    if config.require_root and os.geteuid() != 0:
        fail(explain_not_root())

    return config


async def build_runtime(config: PgGuardConfig) -> Runtime:
    return await initialize_runtime(config)


@asynccontextmanager
async def open_runtime(config: PgGuardConfig) -> AsyncIterator[Runtime]:
    runtime = await build_runtime(config)
    try:
        yield runtime
    finally:
        await shutdown_runtime(runtime)


def run_command(main: Callable[[], Awaitable[int]]) -> NoReturn:
    """Run a command coroutine and exit with the status it returns."""
    try:
        code = asyncio.run(main())
    except PgGuardError as e:
        logger.error("command_failed", error=str(e))
        fail(e.message)
    raise typer.Exit(code=code)


async def require_postgres(runtime: Runtime) -> None:
    service = runtime["config"].postgres_service
    if not await runtime["systemd"].is_active(service):
        fail(explain_postgres_inactive(service))


async def list_databases(runtime: Runtime) -> List[str]:
    """User databases of the server, by name."""
    config = runtime["config"]
    async with runtime["prober"].session(
        admin_endpoint(config), admin_credentials(config)
    ) as db:
        return await db.fetchcol(LIST_DATABASES_SQL)


def parse_services(value: str | None) -> Tuple[str, ...]:
    """Split a comma-separated service list."""
    if not value:
        return ()
    return tuple(name.strip() for name in value.split(",") if name.strip())


def format_size(size: int) -> str:
    """Human readable size, as `du -h` prints it."""
    value = float(size)
    for unit in ("B", "K", "M", "G"):
        if value < 1024:
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}T"


def artifact_table(artifacts: Sequence[BackupArtifact], title: str) -> Table:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("No.", justify="right")
    table.add_column("Filename", style="bold")
    table.add_column("Date")
    table.add_column("Size", justify="right")

    for number, artifact in enumerate(artifacts, start=1):
        table.add_row(
            str(number),
            artifact.filename,
            artifact.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            format_size(artifact.size_bytes),
        )
    return table


def select_artifact(artifacts: Sequence[BackupArtifact], choice: str) -> BackupArtifact:
    """
    Pick an artifact from a listing by number, file name or 'latest'.

    Raises:
        ValueError: If the choice matches nothing
    """
    choice = choice.strip()

    if choice in ("", "latest"):
        if not artifacts:
            raise ValueError("No backups available")
        return artifacts[0]

    if choice.isdigit():
        index = int(choice)
        if 1 <= index <= len(artifacts):
            return artifacts[index - 1]
        raise ValueError(explain_unknown_selection(choice, len(artifacts)))

    for artifact in artifacts:
        if artifact.filename == choice:
            return artifact
    raise ValueError(f"Backup file not found: {choice}")


def ask(message: str) -> str:
    """
    Prompt used for confirmations; an empty answer is allowed.

    Closed stdin or Ctrl-C answers with an empty string, which never
    matches a confirmation literal.
    """
    try:
        return typer.prompt(message, default="", show_default=False)
    except typer.Abort:
        console.print()
        return ""


def report_session(session: RestoreSession) -> int:
    """Print the outcome of a restore session and return its exit code."""
    if session.outcome == RestoreOutcome.CANCELLED:
        console.print("[yellow]Restore operation cancelled by user[/yellow]")
        return session.exit_code

    for warning in session.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")

    if session.outcome == RestoreOutcome.SUCCEEDED:
        console.print(f"[green]Restore of {session.label} completed successfully[/green]")
        if session.summary:
            console.print(session.summary)
    else:
        message = session.error.message if session.error else "Restore failed"
        console.print(f"[red]{message}[/red]")
        if session.summary:
            console.print(session.summary)

    if session.safety_artifact is not None:
        console.print(f"Safety backup: {session.safety_artifact.path}")

    return session.exit_code
