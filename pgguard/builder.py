# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pg-guard Builder - Functional builder pattern for configuration.

This module provides pure functions for building PgGuardConfig objects.
Each function takes a config dict and returns a new dict with the
modification applied (immutable updates).
"""

from pathlib import Path
from typing import Any, Callable, Dict

from pgguard.config import PgGuardConfig


# Type alias for builder functions
ConfigDict = Dict[str, Any]
BuilderFunc = Callable[[ConfigDict], ConfigDict]


def create_empty_config() -> ConfigDict:
    """
    Create an initial configuration dictionary.

    Returns:
        Dict with default values for the commonly tuned configuration fields
    """
    return {
        "backup_root": Path("/var/backups/postgresql"),
        "log_file": Path("/var/log/postgresql_restore.log"),
        "retention_days": 7,
        "safety_retention_days": 7,
        "pg_user": "postgres",
        "run_as": "postgres",
        "admin_database": "postgres",
        "admin_password": None,
        "socket_dir": Path("/var/run/postgresql"),
        "host": "localhost",
        "port": 5432,
        "domain_name": None,
        "postgres_service": "postgresql",
        "readiness_attempts": 30,
        "readiness_interval": 2.0,
        "remediation_max_cycles": 3,
        "remediation_interval": 10.0,
        "cluster_safety_backup": True,
        "restart_server_for_cluster_restore": True,
        "require_root": True,
        "journal_enabled": True,
    }


def with_backup_root(config: ConfigDict, backup_root: Path | str) -> ConfigDict:
    """
    Set the backup root directory.

    Args:
        config: Current configuration dictionary
        backup_root: Directory holding dumps/ and cluster/

    Returns:
        New configuration dictionary with backup_root set
    """
    return {**config, "backup_root": Path(backup_root)}


def with_log_file(config: ConfigDict, log_file: Path | str | None) -> ConfigDict:
    """Set the durable log file (None disables file logging)."""
    return {**config, "log_file": Path(log_file) if log_file else None}


def retain_backups_for(config: ConfigDict, days: int) -> ConfigDict:
    """
    Set the retention window used by post-backup pruning.

    The newest artifact of a scope is always kept regardless of age.

    Args:
        config: Current configuration dictionary
        days: Age threshold in days

    Returns:
        New configuration dictionary with retention set
    """
    if days < 0:
        from pgguard.exceptions import ConfigurationError

        raise ConfigurationError(f"retention days must be >= 0, got {days}")
    return {**config, "retention_days": days}


def with_server(
    config: ConfigDict,
    *,
    host: str | None = None,
    port: int | None = None,
    socket_dir: Path | str | None = None,
) -> ConfigDict:
    """Set how the server is reached over TCP and its Unix socket directory."""
    updates: ConfigDict = {}
    if host is not None:
        updates["host"] = host
    if port is not None:
        updates["port"] = port
    if socket_dir is not None:
        updates["socket_dir"] = Path(socket_dir)
    return {**config, **updates}


def with_admin_password(config: ConfigDict, password: str | None) -> ConfigDict:
    """
    Set the superuser password.

    Enables the authenticated network strategy of the connectivity prober.
    """
    return {**config, "admin_password": password or None}


def with_domain(config: ConfigDict, domain_name: str | None) -> ConfigDict:
    """Set the public domain name; connections to it require TLS."""
    return {**config, "domain_name": domain_name or None}


def run_client_tools_as(config: ConfigDict, os_user: str | None) -> ConfigDict:
    """
    Set the OS account that runs pg_dump, psql and friends.

    None runs them as the current user without sudo.
    """
    return {**config, "run_as": os_user}


def without_cluster_safety_backup(config: ConfigDict) -> ConfigDict:
    """
    Disable the whole-cluster snapshot taken before cluster restores.

    WARNING: A failed cluster restore can then only be repaired from an
    older artifact.
    """
    import sys

    print(
        "⚠️  WARNING: Cluster restores will run without a pre-restore snapshot.",
        file=sys.stderr,
    )
    return {**config, "cluster_safety_backup": False}


def allow_non_root(config: ConfigDict) -> ConfigDict:
    """Allow running without root privileges (tests, containers)."""
    return {**config, "require_root": False}


def without_journal(config: ConfigDict) -> ConfigDict:
    """Disable the SQLite operation journal."""
    return {**config, "journal_enabled": False}


def build_config(config_dict: ConfigDict) -> PgGuardConfig:
    """
    Validate and build an immutable PgGuardConfig from a configuration dictionary.

    Args:
        config_dict: Configuration dictionary built using builder functions

    Returns:
        Validated, immutable PgGuardConfig instance

    Raises:
        ConfigurationError: If validation fails
    """
    return PgGuardConfig(**config_dict)


def pipe(*funcs: BuilderFunc) -> BuilderFunc:
    """
    Compose multiple builder functions into a single function.

    This allows a more readable pipeline style:

        config = pipe(
            lambda c: with_backup_root(c, "/srv/backups"),
            allow_non_root,
        )(create_empty_config())

    Args:
        *funcs: Builder functions to compose

    Returns:
        A single function that applies all functions in sequence
    """

    def composed(config: ConfigDict) -> ConfigDict:
        result = config
        for func in funcs:
            result = func(result)
        return result

    return composed


def build_from_steps(*steps: BuilderFunc) -> PgGuardConfig:
    """
    Build config by applying a sequence of builder functions.

    This is a convenience function that combines pipe() and build_config().
    """
    return build_config(pipe(*steps)(create_empty_config()))


def create_config(
    *,
    backup_root: str | Path | None = None,
    log_file: str | Path | None = None,
    retention_days: int = 7,
    admin_password: str | None = None,
    domain_name: str | None = None,
    run_as: str | None = "postgres",
    **kwargs: Any,
) -> PgGuardConfig:
    """
    Create pg-guard configuration from simple parameters.

    This is the recommended user-facing API for creating configurations.

    Args:
        backup_root: Directory holding dumps/ and cluster/
                     (default: /var/backups/postgresql)
        log_file: Durable log file (default: /var/log/postgresql_restore.log)
        retention_days: Pruning threshold in days (default: 7)
        admin_password: Superuser password, if known
        domain_name: Public domain name of the server, if any
        run_as: OS account for client tools (default: "postgres")
        **kwargs: Any other PgGuardConfig field

    Returns:
        Validated, immutable PgGuardConfig instance

    Example:
        config = create_config(
            backup_root="/srv/pg-backups",
            retention_days=14,
            domain_name="db.example.com",
        )
    """
    config_dict = create_empty_config()

    if backup_root:
        config_dict = with_backup_root(config_dict, backup_root)

    if log_file:
        config_dict = with_log_file(config_dict, log_file)

    config_dict = retain_backups_for(config_dict, retention_days)
    config_dict = with_admin_password(config_dict, admin_password)
    config_dict = with_domain(config_dict, domain_name)
    config_dict = run_client_tools_as(config_dict, run_as)

    # Apply any additional kwargs
    config_dict.update(kwargs)

    return build_config(config_dict)
