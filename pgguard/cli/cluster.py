# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgguard-cluster - Back up and restore the whole PostgreSQL cluster.

A cluster restore replaces every database, role and global object, so it
asks for the full phrase DESTROY AND RESTORE unless -y is given.
"""

import textwrap
from pathlib import Path

import typer

from pgguard.backup.restore import RestoreRequest
from pgguard.cli import common
from pgguard.cli.common import console
from pgguard.config import BackupScope, PgGuardConfig
from pgguard.errors import explain_no_backups

DEFAULT_LOG_FILE = Path("/var/log/postgresql_cluster.log")

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help=textwrap.dedent(
        """
        PostgreSQL cluster backup and restore.

        Cluster backups are taken with pg_dumpall and include all databases,
        roles, permissions and other global objects.
        """
    ).strip(),
)


@app.command()
def backup() -> None:
    """Back up the entire cluster."""
    config = common.setup(DEFAULT_LOG_FILE)

    async def main() -> int:
        async with common.open_runtime(config) as runtime:
            await common.require_postgres(runtime)
            artifact = await runtime["backups"].backup_cluster()

        console.print(f"[green]Cluster backup created:[/green] {artifact.path}")
        console.print(f"Size: {common.format_size(artifact.size_bytes)}")
        return 0

    common.run_command(main)


@app.command()
def restore(
    file: str | None = typer.Option(
        None,
        "-f",
        "--file",
        help="Backup file to restore (file name in the cluster directory, or a path).",
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
    no_safety_backup: bool = typer.Option(
        False,
        "--no-safety-backup",
        help="Do not snapshot the current cluster before restoring.",
    ),
) -> None:
    """Restore the entire cluster from a backup."""
    config = common.setup(DEFAULT_LOG_FILE)
    if no_safety_backup:
        config = config.with_updates(cluster_safety_backup=False)

    async def main() -> int:
        async with common.open_runtime(config) as runtime:
            await common.require_postgres(runtime)
            artifact = await _choose_artifact(runtime, config, file, interactive=not yes)

            if not yes:
                console.print(
                    "[bold red]WARNING:[/bold red] this will DESTROY every database and "
                    "role in the cluster and replace them with the contents of "
                    f"{artifact.filename}"
                )

            session = await runtime["restorer"].run(
                RestoreRequest(
                    scope=BackupScope.CLUSTER,
                    artifact=artifact,
                    services=common.parse_services(services),
                    auto_confirm=yes,
                ),
                prompt=None if yes else common.ask,
            )
        return common.report_session(session)

    common.run_command(main)


async def _choose_artifact(runtime, config: PgGuardConfig, file: str | None, interactive: bool):
    store = runtime["store"]

    if file:
        return store.resolve(BackupScope.CLUSTER, file)

    artifacts = await store.list(BackupScope.CLUSTER)
    if not artifacts:
        common.fail(explain_no_backups(config.cluster_dir))

    if not interactive:
        console.print(f"Using latest backup: {artifacts[0].filename}")
        return artifacts[0]

    console.print(common.artifact_table(artifacts, "Available cluster backups"))
    choice = typer.prompt("Select backup (number, filename or 'latest')", default="latest")
    try:
        return common.select_artifact(artifacts, choice)
    except ValueError as e:
        common.fail(str(e))


@app.command("list")
def list_backups() -> None:
    """List available cluster backups, newest first."""
    config = common.setup(DEFAULT_LOG_FILE)

    async def main() -> int:
        async with common.open_runtime(config) as runtime:
            artifacts = await runtime["store"].list(BackupScope.CLUSTER)

        if not artifacts:
            console.print(f"[yellow]{explain_no_backups(config.cluster_dir)}[/yellow]")
            return 0

        console.print(common.artifact_table(artifacts, "Available cluster backups"))
        return 0

    common.run_command(main)


@app.command("help")
def help_command(ctx: typer.Context) -> None:
    """Show this help and exit."""
    console.print(ctx.parent.get_help() if ctx.parent else ctx.get_help())


def main() -> None:
    app()


if __name__ == "__main__":
    main()
