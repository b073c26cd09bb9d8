# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgguard-restore - Back up and restore single PostgreSQL databases.

Without -d, -f, -y, -l or -b the tool runs interactively: it lists the
databases and their backups and asks what to restore.
"""

from pathlib import Path

import typer

from pgguard.backup.restore import RestoreRequest
from pgguard.cli import common
from pgguard.cli.common import console
from pgguard.config import BackupScope, PgGuardConfig, validate_database_name
from pgguard.errors import explain_no_backups
from pgguard.vault.store import BackupArtifact, parse_artifact_filename

DEFAULT_LOG_FILE = Path("/var/log/postgresql_restore.log")

app = typer.Typer(add_completion=False)


@app.command()
def restore(
    database: str | None = typer.Option(
        None,
        "-d",
        "--database",
        help="Database to restore (or back up with -b).",
    ),
    file: str | None = typer.Option(
        None,
        "-f",
        "--file",
        help="Backup file (file name in the dumps directory, or a path). Defaults to the latest.",
    ),
    list_only: bool = typer.Option(
        False,
        "-l",
        "--list",
        help="List available backups and exit.",
    ),
    interactive: bool = typer.Option(
        False,
        "-i",
        "--interactive",
        help="Choose database, backup and services interactively.",
    ),
    yes: bool = typer.Option(
        False,
        "-y",
        "--yes",
        help="Skip the confirmation prompt.",
    ),
    services: str | None = typer.Option(
        None,
        "-s",
        "--services",
        help="Comma-separated services to stop during the restore.",
    ),
    take_backup: bool = typer.Option(
        False,
        "-b",
        "--backup",
        help="Back up the database given with -d instead of restoring.",
    ),
    allow_no_safety_backup: bool = typer.Option(
        False,
        "--allow-no-safety-backup",
        help="Restore even if the safety backup of the current database fails.",
    ),
) -> None:
    """Restore a PostgreSQL database from a backup."""
    config = common.setup(DEFAULT_LOG_FILE)

    if list_only:
        common.run_command(lambda: _list(config, database))

    if take_backup:
        if not database:
            common.fail("A database name is required for a backup (-d NAME)")
        common.run_command(lambda: _backup(config, database))

    if interactive or not (database or file or yes):
        common.run_command(lambda: _interactive(config, allow_no_safety_backup))

    common.run_command(
        lambda: _restore(
            config,
            database,
            file,
            yes=yes,
            services=common.parse_services(services),
            allow_no_safety_backup=allow_no_safety_backup,
        )
    )


async def _list(config: PgGuardConfig, database: str | None) -> int:
    async with common.open_runtime(config) as runtime:
        artifacts = await runtime["store"].list(BackupScope.DATABASE, database)

    if not artifacts:
        console.print(f"[yellow]{explain_no_backups(config.dumps_dir, database)}[/yellow]")
        return 0

    console.print(common.artifact_table(artifacts, "Available database backups"))
    return 0


async def _backup(config: PgGuardConfig, database: str) -> int:
    async with common.open_runtime(config) as runtime:
        await common.require_postgres(runtime)
        artifact = await runtime["backups"].backup_database(database)

    console.print(f"[green]Backup of {database} created:[/green] {artifact.path}")
    console.print(f"Size: {common.format_size(artifact.size_bytes)}")
    return 0


def _target_of(artifact: BackupArtifact, database: str | None) -> str:
    if database:
        return database

    parsed = parse_artifact_filename(artifact.filename)
    if parsed is None or not parsed.target_name:
        common.fail(
            f"Cannot tell which database {artifact.filename} belongs to; pass -d NAME"
        )
    return parsed.target_name


async def _restore(
    config: PgGuardConfig,
    database: str | None,
    file: str | None,
    *,
    yes: bool,
    services: tuple,
    allow_no_safety_backup: bool,
) -> int:
    async with common.open_runtime(config) as runtime:
        await common.require_postgres(runtime)
        store = runtime["store"]

        if file:
            artifact = store.resolve(BackupScope.DATABASE, file, database or "")
        else:
            artifact = await store.latest(BackupScope.DATABASE, database)
            if artifact is None:
                common.fail(explain_no_backups(config.dumps_dir, database))
            console.print(f"Using latest backup: {artifact.filename}")

        target = _target_of(artifact, database)
        if not yes:
            console.print(
                f"[bold red]WARNING:[/bold red] database '{target}' will be dropped and "
                f"replaced with the contents of {artifact.filename}"
            )

        session = await runtime["restorer"].run(
            RestoreRequest(
                scope=BackupScope.DATABASE,
                artifact=artifact,
                target_name=target,
                services=services,
                auto_confirm=yes,
                allow_without_safety_backup=allow_no_safety_backup,
            ),
            prompt=None if yes else common.ask,
        )
    return common.report_session(session)


async def _interactive(config: PgGuardConfig, allow_no_safety_backup: bool) -> int:
    async with common.open_runtime(config) as runtime:
        await common.require_postgres(runtime)

        databases = await common.list_databases(runtime)
        console.print("[bold]Databases:[/bold] " + (", ".join(databases) or "(none)"))

        database = typer.prompt("Database to restore").strip()
        if not validate_database_name(database):
            common.fail(f"Invalid database name: {database!r}")

        artifacts = await runtime["store"].list(BackupScope.DATABASE, database)
        if not artifacts:
            common.fail(explain_no_backups(config.dumps_dir, database))

        console.print(common.artifact_table(artifacts, f"Backups of {database}"))
        choice = typer.prompt("Select backup (number, filename or 'latest')", default="latest")
        try:
            artifact = common.select_artifact(artifacts, choice)
        except ValueError as e:
            common.fail(str(e))

        services = typer.prompt(
            "Services to stop during the restore (comma-separated, empty for none)",
            default="",
            show_default=False,
        )

        console.print(
            f"[bold red]WARNING:[/bold red] database '{database}' will be dropped and "
            f"replaced with the contents of {artifact.filename}"
        )
        session = await runtime["restorer"].run(
            RestoreRequest(
                scope=BackupScope.DATABASE,
                artifact=artifact,
                target_name=database,
                services=common.parse_services(services),
                allow_without_safety_backup=allow_no_safety_backup,
            ),
            prompt=common.ask,
        )
    return common.report_session(session)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
