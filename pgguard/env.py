# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers and safety profiles.

These helpers are small, convenient wrappers around create_config() and
PgGuardConfig.with_updates(). They make it easy to:

- Build a configuration from environment variables
- Apply ready-made safety profiles
"""

from __future__ import annotations

import os
from pathlib import Path

from pgguard.builder import create_config
from pgguard.config import PgGuardConfig
from pgguard.errors import explain_invalid_bool_env, explain_invalid_int_env
from pgguard.exceptions import ConfigurationError

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_int(name: str, value: str | None, default: int) -> int:
    if not value:
        return default
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_int_env(name, value)) from exc
    if number < 0:
        raise ConfigurationError(explain_invalid_int_env(name, value))
    return number


def _parse_bool(name: str, value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigurationError(explain_invalid_bool_env(name, value))


def _parse_run_as(value: str | None) -> str | None:
    if value is None:
        return "postgres"
    # Empty string means "run client tools directly"
    return value or None


def create_config_from_env(*, log_file: Path | str | None = None) -> PgGuardConfig:
    """
    Create a PgGuardConfig from environment variables.

    Args:
        log_file: Default durable log file for the calling tool; the
                  PGGUARD_LOG_FILE variable takes precedence.

    Optional environment variables:
        - PGGUARD_BACKUP_ROOT: Directory holding dumps/ and cluster/
          (default: /var/backups/postgresql)
        - PGGUARD_LOG_FILE: Durable log file
        - PGGUARD_RETENTION_DAYS: Non-negative integer (default: 7)
        - PGGUARD_RUN_AS: OS user for client tools (default: postgres,
          empty string disables sudo)
        - PGGUARD_PG_USER: Database superuser (default: postgres)
        - PGGUARD_PORT: Server port (default: 5432)
        - PGGUARD_SOCKET_DIR: Unix socket directory (default: /var/run/postgresql)
        - PGGUARD_DOMAIN: Public domain name of the server
        - POSTGRES_PASSWORD: Superuser password, enables authenticated TCP
        - PGGUARD_CLUSTER_SAFETY_BACKUP: Snapshot before cluster restores (default: 1)
        - PGGUARD_REQUIRE_ROOT: Refuse to run as non-root (default: 1)
        - PGGUARD_JOURNAL: Record operations in journal.db (default: 1)
        - PGGUARD_EXPORTER_ENV: Exporter credential file
          (default: /etc/postgres_exporter/.env)
    """

    backup_root = os.getenv("PGGUARD_BACKUP_ROOT") or None
    log_file = os.getenv("PGGUARD_LOG_FILE") or log_file
    socket_dir = os.getenv("PGGUARD_SOCKET_DIR")
    exporter_env = os.getenv("PGGUARD_EXPORTER_ENV")

    extra: dict = {
        "pg_user": os.getenv("PGGUARD_PG_USER") or "postgres",
        "port": _parse_int("PGGUARD_PORT", os.getenv("PGGUARD_PORT"), 5432),
        "cluster_safety_backup": _parse_bool(
            "PGGUARD_CLUSTER_SAFETY_BACKUP", os.getenv("PGGUARD_CLUSTER_SAFETY_BACKUP"), True
        ),
        "require_root": _parse_bool(
            "PGGUARD_REQUIRE_ROOT", os.getenv("PGGUARD_REQUIRE_ROOT"), True
        ),
        "journal_enabled": _parse_bool("PGGUARD_JOURNAL", os.getenv("PGGUARD_JOURNAL"), True),
    }
    if socket_dir:
        extra["socket_dir"] = Path(socket_dir)
    if exporter_env:
        extra["exporter_env_path"] = Path(exporter_env)

    return create_config(
        backup_root=backup_root,
        log_file=log_file,
        retention_days=_parse_int(
            "PGGUARD_RETENTION_DAYS", os.getenv("PGGUARD_RETENTION_DAYS"), 7
        ),
        admin_password=os.getenv("POSTGRES_PASSWORD") or None,
        domain_name=os.getenv("PGGUARD_DOMAIN") or None,
        run_as=_parse_run_as(os.getenv("PGGUARD_RUN_AS")),
        **extra,
    )


# ============================================================================
# Profiles
# ============================================================================

def safe_defaults(config: PgGuardConfig) -> PgGuardConfig:
    """
    Apply conservative, safety-first defaults.

    - Always snapshot the cluster before cluster restores
    - Ensure at least 7 days retention
    - Keep the operation journal on
    """

    return config.with_updates(
        cluster_safety_backup=True,
        retention_days=max(config.retention_days, 7),
        safety_retention_days=max(config.safety_retention_days, 7),
        journal_enabled=True,
    )


def unattended(config: PgGuardConfig) -> PgGuardConfig:
    """
    Apply a profile for cron and provisioning runs.

    - Requires a durable log file (falls back to the cluster log)
    - Shorter remediation waits so provisioning does not stall
    """

    return config.with_updates(
        log_file=config.log_file or Path("/var/log/postgresql_cluster.log"),
        remediation_interval=min(config.remediation_interval, 5.0),
    )


def local_development(config: PgGuardConfig) -> PgGuardConfig:
    """
    Apply a profile for running against a server owned by the current user.

    - No root requirement, no sudo
    - No server restarts around cluster restores
    """

    return config.with_updates(
        require_root=False,
        run_as=None,
        restart_server_for_cluster_restore=False,
    )
