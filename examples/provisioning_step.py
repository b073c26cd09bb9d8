# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example provisioning step with pg-guard.

A server setup script that is about to change the PostgreSQL TLS or
authentication configuration takes a cluster backup first, applies the
change, and finally checks that postgres_exporter is still connected.

Run as root with:
    python examples/provisioning_step.py

Environment variables:
    POSTGRES_PASSWORD: Superuser password (optional)
    PGGUARD_DOMAIN: Public domain name of the server (optional)
    PGGUARD_BACKUP_ROOT: Backup directory (default: /var/backups/postgresql)
"""

import asyncio
import os
import sys

from pgguard.builder import (
    build_from_steps,
    retain_backups_for,
    with_admin_password,
    with_backup_root,
    with_domain,
    with_log_file,
)
from pgguard.core import initialize_runtime, run_post_change_verification, shutdown_runtime
from pgguard.env import unattended
from pgguard.exceptions import PgGuardError
from pgguard.logconfig import configure_logging


def create_provisioning_config():
    """
    Build the configuration with the functional builder.

    Provisioning runs unattended, so the profile guarantees a durable log
    and short remediation waits.
    """
    config = build_from_steps(
        lambda c: with_backup_root(
            c, os.getenv("PGGUARD_BACKUP_ROOT", "/var/backups/postgresql")
        ),
        lambda c: with_log_file(c, "/var/log/postgresql_cluster.log"),
        lambda c: retain_backups_for(c, 14),
        lambda c: with_admin_password(c, os.getenv("POSTGRES_PASSWORD")),
        lambda c: with_domain(c, os.getenv("PGGUARD_DOMAIN")),
    )
    return unattended(config)


async def apply_configuration_change() -> None:
    """Placeholder for the provisioning work (pg_hba.conf, certificates...)."""
    await asyncio.sleep(0)


async def main() -> int:
    config = create_provisioning_config()
    configure_logging(config.log_file)

    runtime = await initialize_runtime(config)
    try:
        # Snapshot before touching anything
        artifact = await runtime["backups"].backup_cluster()
        print(f"Pre-change cluster backup: {artifact.path}")

        await apply_configuration_change()

        # Never fails the provisioning run; an unhealthy exporter is a warning
        result = await run_post_change_verification(runtime)
        if result.succeeded:
            print(f"{result.service} connected after {result.cycles} remediation cycles")
        else:
            print(f"WARNING: {result.service} not healthy: {result.reason}")
    except PgGuardError as e:
        print(f"Provisioning step failed: {e}", file=sys.stderr)
        return 1
    finally:
        await shutdown_runtime(runtime)

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
