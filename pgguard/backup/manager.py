# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pg-guard Backup Manager - One artifact per invocation.

Database scope dumps exactly one database with pg_dump. Cluster scope
uses pg_dumpall, which also carries roles, permissions and other global
objects that belong to no single database. Either way the dump is
compressed on the fly straight into the Artifact Store.
"""

from pathlib import Path

import structlog

from pgguard.config import BackupScope, PgGuardConfig
from pgguard.exceptions import BackupFailed, PgGuardError
from pgguard.postgres.commands import CommandRunner, pg_command
from pgguard.vault.journal import record_artifact, write_journal
from pgguard.vault.store import ArtifactStore, BackupArtifact, IntegrityState

logger = structlog.get_logger()


class BackupManager:
    """
    Produce, verify and retain backup artifacts.

    Args:
        config: Immutable configuration
        store: Artifact Store the dumps are written to
        runner: Runs pg_dump / pg_dumpall
        journal_path: Journal database (None disables journaling)
    """

    def __init__(
        self,
        config: PgGuardConfig,
        store: ArtifactStore,
        runner: CommandRunner,
        journal_path: Path | None = None,
    ):
        self._config = config
        self._store = store
        self._runner = runner
        self._journal_path = journal_path

    def _dump_command(self, scope: BackupScope, name: str) -> list:
        connection = ["-h", str(self._config.socket_dir), "-p", str(self._config.port)]
        if scope == BackupScope.CLUSTER:
            return pg_command(self._config.run_as, "pg_dumpall", *connection, "-U", self._config.pg_user)
        return pg_command(
            self._config.run_as, "pg_dump", *connection, "-U", self._config.pg_user, "-d", name
        )

    async def _write(self, scope: BackupScope, name: str, safety: bool) -> BackupArtifact:
        argv = self._dump_command(scope, name)
        label = name or "cluster"

        logger.info("backup_started", scope=scope.value, target=label, safety=safety)

        try:
            artifact = await self._store.put(scope, name, self._runner.stream(argv), safety=safety)
        except PgGuardError as e:
            raise BackupFailed(
                f"Backup of {label} failed: {e.message}",
                details={"scope": scope.value, **e.details},
            ) from e
        except Exception as e:
            raise BackupFailed(
                f"Backup of {label} failed: {e}",
                details={"scope": scope.value},
            ) from e

        artifact = await self._store.validated(artifact)
        if artifact.integrity != IntegrityState.VALID:
            await self._store.discard(artifact)
            raise BackupFailed(
                f"Backup of {label} did not pass the integrity check",
                details={"path": str(artifact.path)},
            )

        await write_journal(
            self._journal_path,
            record_artifact,
            scope.value,
            artifact.target_name,
            str(artifact.path),
            artifact.size_bytes,
            safety,
        )

        logger.info(
            "backup_completed",
            scope=scope.value,
            target=label,
            path=str(artifact.path),
            size_bytes=artifact.size_bytes,
        )
        return artifact

    async def _prune_after_backup(
        self,
        scope: BackupScope,
        days: int,
        target_name: str | None,
        safety: bool,
    ) -> None:
        # Retention is best effort: a failure here never fails the backup
        try:
            await self._store.prune(scope, days, target_name=target_name, safety=safety)
        except Exception as e:
            logger.warning(
                "backup_prune_failed",
                scope=scope.value,
                target=target_name,
                error=str(e),
            )

    async def backup_database(self, name: str) -> BackupArtifact:
        """
        Dump one database into a new artifact, then prune its old artifacts.

        Raises:
            BackupFailed: If pg_dump fails or the artifact is unusable
        """
        artifact = await self._write(BackupScope.DATABASE, name, safety=False)
        await self._prune_after_backup(
            BackupScope.DATABASE, self._config.retention_days, name, safety=False
        )
        return artifact

    async def backup_cluster(self) -> BackupArtifact:
        """
        Dump the whole cluster (all databases, roles, globals), then prune.

        Raises:
            BackupFailed: If pg_dumpall fails or the artifact is unusable
        """
        artifact = await self._write(BackupScope.CLUSTER, "", safety=False)
        await self._prune_after_backup(
            BackupScope.CLUSTER, self._config.retention_days, None, safety=False
        )
        return artifact

    async def safety_backup(self, scope: BackupScope, name: str = "") -> BackupArtifact:
        """
        Snapshot the current state right before a destructive restore.

        Snapshots go to the scope's emergency/ directory and are pruned with
        the safety retention.

        Raises:
            BackupFailed: If the snapshot cannot be taken
        """
        artifact = await self._write(scope, name, safety=True)
        await self._prune_after_backup(
            scope,
            self._config.safety_retention_days,
            name if scope == BackupScope.DATABASE else None,
            safety=True,
        )
        return artifact
