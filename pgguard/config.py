# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pg-guard Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation and handed to each
component at construction time. Nothing reads process state after that.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List
import re


class BackupScope(str, Enum):
    """Scope covered by a backup artifact."""

    DATABASE = "database"  # One logical database
    CLUSTER = "cluster"  # All databases, roles and global settings


# Directory name under backup_root for each scope
SCOPE_DIRECTORIES = {
    BackupScope.DATABASE: "dumps",
    BackupScope.CLUSTER: "cluster",
}

EMERGENCY_DIRECTORY = "emergency"

_ROLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]{0,62}$")
_SSLMODES = {"disable", "allow", "prefer", "require", "verify-ca", "verify-full"}


def _validate_role_name(name: str) -> bool:
    """Validate an unquoted PostgreSQL identifier (max 63 bytes)."""
    return bool(name) and bool(_ROLE_NAME.match(name))


def validate_database_name(name: str) -> bool:
    """
    Validate a database name used on command lines and in file names.

    Rules:
    - 1-63 characters
    - No path separators, whitespace or NUL
    - No leading "-" (client tools would parse it as an option)
    """
    if not name or len(name) > 63 or name.startswith("-"):
        return False
    return not any(c in name for c in ("/", "\\", "\x00")) and not any(c.isspace() for c in name)


@dataclass(frozen=True)
class PgGuardConfig:
    """
    Immutable configuration for backup, restore and service verification.

    Defaults follow the layout of a stock Debian/Ubuntu PostgreSQL server
    operated as root.
    """

    # Root directory; database dumps live in dumps/, cluster dumps in cluster/
    backup_root: Path = Path("/var/backups/postgresql")

    # Durable log file (None disables file logging)
    log_file: Path | None = Path("/var/log/postgresql_restore.log")

    # Artifacts older than this are pruned after each successful backup
    retention_days: int = 7

    # Retention for automatic pre-restore snapshots
    safety_retention_days: int = 7

    # Database superuser
    pg_user: str = "postgres"

    # OS account client tools run as (via sudo); None runs them directly
    run_as: str | None = "postgres"

    # Administrative database used for cluster-wide queries
    admin_database: str = "postgres"

    # Superuser password; enables the authenticated TCP strategy when set
    admin_password: str | None = None

    # Unix socket directory of the server
    socket_dir: Path = Path("/var/run/postgresql")

    host: str = "localhost"
    port: int = 5432

    # Public domain name; authenticated connections to it require TLS
    domain_name: str | None = None

    # systemd unit of the database server
    postgres_service: str = "postgresql"

    # Per-connection timeout in seconds
    connect_timeout: float = 5.0

    # Readiness polling after server (re)starts
    readiness_attempts: int = 30
    readiness_interval: float = 2.0

    # Service Health Verifier loop
    remediation_max_cycles: int = 3
    remediation_interval: float = 10.0

    # Snapshot the whole cluster before a cluster-scope restore
    cluster_safety_backup: bool = True

    # Restart the server before and after a cluster-scope restore
    restart_server_for_cluster_restore: bool = True

    # Refuse to run unless effective uid is 0
    require_root: bool = True

    # gzip level for artifacts (1-9)
    compression_level: int = 6

    # Streaming chunk size in bytes
    chunk_size: int = 64 * 1024

    # Record backups and restore sessions in backup_root/journal.db
    journal_enabled: bool = True

    # Metrics exporter under verification
    exporter_service: str = "postgres_exporter"
    exporter_metrics_url: str = "http://localhost:9187/metrics"
    exporter_user: str = "postgres_exporter"
    exporter_database: str | None = None
    exporter_env_path: Path = Path("/etc/postgres_exporter/.env")
    exporter_unit_path: Path = Path("/etc/systemd/system/postgres_exporter.service")
    exporter_binary: Path = Path("/usr/local/bin/postgres_exporter")
    exporter_os_user: str = "postgres"
    exporter_sslmode: str = "require"

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not str(self.backup_root):
            errors.append("backup_root must not be empty")

        if self.retention_days < 0:
            errors.append(f"retention_days must be >= 0, got {self.retention_days}")

        if self.safety_retention_days < 0:
            errors.append(
                f"safety_retention_days must be >= 0, got {self.safety_retention_days}"
            )

        for label, value in (("pg_user", self.pg_user), ("exporter_user", self.exporter_user)):
            if not _validate_role_name(value):
                errors.append(f"Invalid {label}: {value!r}")

        if not validate_database_name(self.admin_database):
            errors.append(f"Invalid admin_database: {self.admin_database!r}")

        if self.exporter_database and not validate_database_name(self.exporter_database):
            errors.append(f"Invalid exporter_database: {self.exporter_database!r}")

        if not self.socket_dir.is_absolute():
            errors.append(f"socket_dir must be an absolute path, got {self.socket_dir}")

        if not 1 <= self.port <= 65535:
            errors.append(f"port must be between 1 and 65535, got {self.port}")

        if self.connect_timeout <= 0:
            errors.append(f"connect_timeout must be > 0, got {self.connect_timeout}")

        if self.readiness_attempts < 1:
            errors.append(f"readiness_attempts must be >= 1, got {self.readiness_attempts}")

        if self.readiness_interval < 0 or self.remediation_interval < 0:
            errors.append("readiness_interval and remediation_interval must be >= 0")

        if self.remediation_max_cycles < 1:
            errors.append(
                f"remediation_max_cycles must be >= 1, got {self.remediation_max_cycles}"
            )

        if not 1 <= self.compression_level <= 9:
            errors.append(
                f"compression_level must be between 1 and 9, got {self.compression_level}"
            )

        if self.chunk_size < 1:
            errors.append(f"chunk_size must be >= 1, got {self.chunk_size}")

        if self.exporter_sslmode not in _SSLMODES:
            errors.append(f"Invalid exporter_sslmode: {self.exporter_sslmode!r}")

        # Raise all errors at once
        if errors:
            from pgguard.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def dumps_dir(self) -> Path:
        return self.backup_root / SCOPE_DIRECTORIES[BackupScope.DATABASE]

    @property
    def cluster_dir(self) -> Path:
        return self.backup_root / SCOPE_DIRECTORIES[BackupScope.CLUSTER]

    @property
    def journal_path(self) -> Path | None:
        return self.backup_root / "journal.db" if self.journal_enabled else None

    def scope_dir(self, scope: BackupScope) -> Path:
        """Directory holding regular artifacts of a scope."""
        return self.backup_root / SCOPE_DIRECTORIES[scope]

    def emergency_dir(self, scope: BackupScope) -> Path:
        """Directory holding pre-restore snapshots of a scope."""
        return self.scope_dir(scope) / EMERGENCY_DIRECTORY

    def with_updates(self, **kwargs) -> "PgGuardConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import asdict

        current = asdict(self)
        current.update(kwargs)
        return PgGuardConfig(**current)
