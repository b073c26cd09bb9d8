# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgguard-verify - Check that the metrics exporter is connected, and repair it.

Meant to run as the last step of provisioning or after a TLS or
credential change. A service that could not be repaired is reported as a
warning; the exit status stays 0 so the calling flow carries on.
"""

from pathlib import Path

import typer
from rich.table import Table

from pgguard.cli import common
from pgguard.cli.common import console
from pgguard.core import run_post_change_verification
from pgguard.exceptions import ConfigurationError
from pgguard.services.health import VerificationResult

DEFAULT_LOG_FILE = Path("/var/log/postgresql_verify.log")

app = typer.Typer(add_completion=False)


@app.command()
def verify(
    max_cycles: int | None = typer.Option(
        None,
        "--max-cycles",
        min=1,
        help="Remediation cycles before giving up (default: 3).",
    ),
    interval: float | None = typer.Option(
        None,
        "--interval",
        min=0.0,
        help="Seconds to wait after each remediation (default: 10).",
    ),
) -> None:
    """Verify the metrics exporter and remediate it if needed."""
    config = common.setup(DEFAULT_LOG_FILE)

    updates: dict = {}
    if max_cycles is not None:
        updates["remediation_max_cycles"] = max_cycles
    if interval is not None:
        updates["remediation_interval"] = interval
    if updates:
        try:
            config = config.with_updates(**updates)
        except ConfigurationError as e:
            common.fail(str(e))

    async def main() -> int:
        async with common.open_runtime(config) as runtime:
            result = await run_post_change_verification(runtime)
        _report(result)
        return 0

    common.run_command(main)


def _report(result: VerificationResult) -> None:
    if result.actions:
        table = Table(title=f"Remediation of {result.service}", header_style="bold magenta")
        table.add_column("Cycle", justify="right")
        table.add_column("Symptom")
        table.add_column("Action")
        table.add_column("Result")
        table.add_column("Detail")
        for action in result.actions:
            table.add_row(
                str(action.cycle),
                action.symptom.value,
                action.action.value,
                "ok" if action.succeeded else "failed",
                action.detail,
            )
        console.print(table)

    if result.succeeded:
        console.print(f"[green]{result.service} is connected to PostgreSQL[/green]")
        return

    console.print(
        f"[yellow]Warning:[/yellow] {result.service} is still not healthy after "
        f"{result.cycles} remediation cycles ({result.reason})"
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
