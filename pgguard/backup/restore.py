# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pg-guard Restore Orchestrator - The only code path that replaces data.

Each restore is a RestoreSession walking a fixed state machine:

    REQUESTED -> VALIDATED -> SAFETY_BACKUP_TAKEN | SAFETY_BACKUP_SKIPPED
              -> CONFIRMED -> SERVICES_PAUSED -> REPLACED -> VERIFIED

and ending SUCCEEDED, FAILED or CANCELLED.

Guarantees:
- Nothing destructive happens before the artifact passed the integrity
  check and the current state was snapshotted (or skipping the snapshot
  was explicitly accepted).
- A wrong confirmation is a clean cancellation: no service is touched and
  the snapshot taken for the session is discarded.
- Services paused for the restore are restarted on every exit path.
- The postcondition (table count, or database and role counts) is always
  computed after a replace, even after a failed one.
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Tuple

import structlog

from pgguard.backup.manager import BackupManager
from pgguard.config import BackupScope, PgGuardConfig, validate_database_name
from pgguard.errors import explain_replace_failed, explain_safety_backup_failed
from pgguard.exceptions import (
    ArtifactCorrupt,
    ArtifactNotFound,
    BackupFailed,
    CommandError,
    DatabaseUnreachable,
    PgGuardError,
    ProbeError,
    ReplaceFailed,
    RestoreError,
    SafetyBackupFailed,
    TargetMissing,
    UserCancelled,
    ValidationFailure,
    VerificationInconclusive,
)
from pgguard.postgres.commands import CommandResult, CommandRunner, pg_command
from pgguard.postgres.probe import ConnectivityProber, admin_credentials, admin_endpoint
from pgguard.postgres.sql import quote_literal
from pgguard.services.health import wait_for_database
from pgguard.services.systemd import SystemdController
from pgguard.vault.journal import complete_restore, record_restore_started, write_journal
from pgguard.vault.store import ArtifactStore, BackupArtifact, IntegrityState

logger = structlog.get_logger()

CONFIRMATION_LITERALS = {
    BackupScope.DATABASE: "yes",
    BackupScope.CLUSTER: "DESTROY AND RESTORE",
}

TABLE_COUNT_SQL = "SELECT COUNT(*) FROM information_schema.tables WHERE table_schema = 'public'"
DATABASE_COUNT_SQL = "SELECT COUNT(*) FROM pg_database WHERE datistemplate = false"
ROLE_COUNT_SQL = "SELECT COUNT(*) FROM pg_roles WHERE rolname !~ '^pg_'"

# Answers a question shown to the operator (typer.prompt in the CLIs)
Prompt = Callable[[str], str]


def _ask(prompt: Prompt, message: str) -> str | None:
    """Ask the operator; end of input or Ctrl-C counts as no answer."""
    try:
        return prompt(message)
    except (EOFError, KeyboardInterrupt):
        return None


class RestorePhase(str, Enum):
    REQUESTED = "requested"
    VALIDATED = "validated"
    SAFETY_BACKUP_TAKEN = "safety_backup_taken"
    SAFETY_BACKUP_SKIPPED = "safety_backup_skipped"
    CONFIRMED = "confirmed"
    SERVICES_PAUSED = "services_paused"
    REPLACED = "replaced"
    VERIFIED = "verified"


class RestoreOutcome(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RestoreRequest:
    """What the operator asked for."""

    scope: BackupScope
    artifact: BackupArtifact
    target_name: str = ""  # Database name (database scope)
    services: Tuple[str, ...] = ()  # Paused around the destructive window
    auto_confirm: bool = False
    confirmation: str | None = None  # Pre-supplied answer to the confirmation
    allow_without_safety_backup: bool = False


@dataclass
class RestoreSession:
    """One destructive-restore attempt."""

    id: str  # ULID
    scope: BackupScope
    target_name: str
    artifact: BackupArtifact
    services_to_pause: Tuple[str, ...]
    required_confirmation: str
    safety_artifact: BackupArtifact | None = None
    phase: RestorePhase = RestorePhase.REQUESTED
    outcome: RestoreOutcome = RestoreOutcome.PENDING
    postcondition: Dict[str, int] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    error: RestoreError | None = None
    paused_services: List[str] = field(default_factory=list)
    transitions: List[RestorePhase] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def label(self) -> str:
        return self.target_name if self.scope == BackupScope.DATABASE else "cluster"

    @property
    def exit_code(self) -> int:
        """0 for success and cancellation, 1 otherwise."""
        return 0 if self.outcome in (RestoreOutcome.SUCCEEDED, RestoreOutcome.CANCELLED) else 1

    @property
    def summary(self) -> str | None:
        """Postcondition sentence shown to the operator."""
        if "tables" in self.postcondition:
            return f"Restored database contains {self.postcondition['tables']} tables"
        if "databases" in self.postcondition:
            return (
                f"Restored cluster contains {self.postcondition['databases']} databases "
                f"and {self.postcondition['roles']} roles"
            )
        return None

    def advance(self, phase: RestorePhase) -> None:
        self.phase = phase
        self.transitions.append(phase)
        logger.info(
            "restore_phase_entered",
            session_id=self.id,
            scope=self.scope.value,
            target=self.label,
            phase=phase.value,
        )

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": self.scope.value,
            "target_name": self.target_name,
            "artifact": self.artifact.to_dict(),
            "safety_artifact": self.safety_artifact.to_dict() if self.safety_artifact else None,
            "phase": self.phase.value,
            "outcome": self.outcome.value,
            "postcondition": dict(self.postcondition),
            "warnings": list(self.warnings),
            "error": str(self.error) if self.error else None,
            "paused_services": list(self.paused_services),
        }


class RestoreOrchestrator:
    """
    Run restore sessions.

    Args:
        config: Immutable configuration
        store: Source of artifacts
        backups: Takes the pre-restore snapshots
        runner: Runs dropdb, createdb and psql
        prober: Establishes sessions before and after the replace
        systemd: Pauses and resumes dependent services
        sleep: Injectable asyncio.sleep for readiness polling
        journal_path: Journal database (None disables journaling)
    """

    def __init__(
        self,
        config: PgGuardConfig,
        store: ArtifactStore,
        backups: BackupManager,
        runner: CommandRunner,
        prober: ConnectivityProber,
        systemd: SystemdController,
        *,
        sleep: Callable[[float], object] = asyncio.sleep,
        journal_path: Path | None = None,
    ):
        self._config = config
        self._store = store
        self._backups = backups
        self._runner = runner
        self._prober = prober
        self._systemd = systemd
        self._sleep = sleep
        self._journal_path = journal_path

    async def run(self, request: RestoreRequest, prompt: Prompt | None = None) -> RestoreSession:
        """
        Execute one restore session.

        Restore errors are recorded on the returned session rather than
        raised; check session.outcome and session.error.

        Args:
            request: What to restore where
            prompt: Asks the operator a question (None: non-interactive)

        Returns:
            The finished RestoreSession
        """
        from ulid import ULID

        target_name = request.target_name if request.scope == BackupScope.DATABASE else ""
        session = RestoreSession(
            id=str(ULID()),
            scope=request.scope,
            target_name=target_name,
            artifact=request.artifact,
            services_to_pause=tuple(request.services),
            required_confirmation=CONFIRMATION_LITERALS[request.scope],
        )
        session.transitions.append(RestorePhase.REQUESTED)

        logger.info(
            "restore_requested",
            session_id=session.id,
            scope=session.scope.value,
            target=session.label,
            artifact=str(request.artifact.path),
            services=list(session.services_to_pause),
        )
        await write_journal(
            self._journal_path,
            record_restore_started,
            session.id,
            session.scope.value,
            session.target_name,
            str(request.artifact.path),
            list(session.services_to_pause),
        )

        try:
            await self._validate(session)
            await self._take_safety_backup(session, request, prompt)
            self._confirm(session, request, prompt)
            await self._pause_services(session)
            await self._replace(session)
            await self._verify(session)
            session.outcome = RestoreOutcome.SUCCEEDED

        except UserCancelled as e:
            session.outcome = RestoreOutcome.CANCELLED
            session.error = e
            await self._discard_safety_backup(session)
            logger.info("restore_cancelled", session_id=session.id, message=e.message)

        except RestoreError as e:
            session.outcome = RestoreOutcome.FAILED
            session.error = e
            logger.error(
                "restore_failed",
                session_id=session.id,
                phase=session.phase.value,
                error=str(e),
            )
            if isinstance(e, ReplaceFailed):
                await self._verify_after_failure(session)

        except Exception as e:
            session.outcome = RestoreOutcome.FAILED
            session.error = RestoreError(
                f"Unexpected error during restore: {e}",
                details={"phase": session.phase.value},
            )
            logger.exception("restore_failed_unexpectedly", session_id=session.id)

        finally:
            await self._resume_services(session)
            session.completed_at = datetime.now(UTC)
            await write_journal(
                self._journal_path,
                complete_restore,
                session.id,
                phase=session.phase.value,
                outcome=session.outcome.value,
                safety_artifact_path=(
                    str(session.safety_artifact.path) if session.safety_artifact else None
                ),
                postcondition=session.postcondition,
                warnings=session.warnings,
                error=str(session.error) if session.error else None,
            )

        logger.info(
            "restore_finished",
            session_id=session.id,
            outcome=session.outcome.value,
            phase=session.phase.value,
            summary=session.summary,
            warnings=len(session.warnings),
            duration_seconds=round((session.completed_at - session.started_at).total_seconds(), 3),
        )
        return session

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _validate(self, session: RestoreSession) -> None:
        artifact = session.artifact

        if not artifact.path.is_file():
            raise ArtifactNotFound(
                f"Backup file not found: {artifact.path}",
                details={"path": str(artifact.path)},
            )

        if artifact.scope != session.scope:
            raise ValidationFailure(
                f"{artifact.filename} is a {artifact.scope.value} backup, "
                f"not a {session.scope.value} backup",
                details={"path": str(artifact.path)},
            )

        state = await self._store.validate(artifact)
        session.artifact = replace(artifact, integrity=state)
        if state != IntegrityState.VALID:
            raise ArtifactCorrupt(
                f"Backup file is corrupted: {artifact.filename}",
                details={"path": str(artifact.path)},
            )

        if session.scope == BackupScope.DATABASE and not validate_database_name(session.target_name):
            raise ValidationFailure(f"Invalid database name: {session.target_name!r}")

        try:
            async with self._prober.session(
                admin_endpoint(self._config), admin_credentials(self._config)
            ) as db:
                if session.scope == BackupScope.DATABASE:
                    exists = await db.fetchval(
                        "SELECT 1 FROM pg_database WHERE datname = "
                        + quote_literal(session.target_name)
                    )
                    if exists is None:
                        raise TargetMissing(
                            f"Database '{session.target_name}' does not exist. "
                            "Please create it first.",
                            details={"database": session.target_name},
                        )
        except (ProbeError, CommandError) as e:
            raise DatabaseUnreachable(
                f"Cannot connect to PostgreSQL: {e.message}",
                details=e.details,
            ) from e

        session.advance(RestorePhase.VALIDATED)

    async def _take_safety_backup(
        self,
        session: RestoreSession,
        request: RestoreRequest,
        prompt: Prompt | None,
    ) -> None:
        if session.scope == BackupScope.CLUSTER and not self._config.cluster_safety_backup:
            logger.warning("cluster_safety_backup_disabled", session_id=session.id)
            session.warn("No pre-restore snapshot of the cluster was taken")
            session.advance(RestorePhase.SAFETY_BACKUP_SKIPPED)
            return

        try:
            session.safety_artifact = await self._backups.safety_backup(
                session.scope, session.target_name
            )
        except BackupFailed as e:
            logger.warning("safety_backup_failed", session_id=session.id, error=str(e))

            accepted = request.allow_without_safety_backup
            if not accepted and prompt is not None and not request.auto_confirm:
                answer = _ask(
                    prompt,
                    f"Safety backup of {session.label} failed. "
                    "Type 'yes' to restore WITHOUT a safety backup",
                )
                accepted = answer == "yes"

            if not accepted:
                raise SafetyBackupFailed(
                    explain_safety_backup_failed(session.label),
                    details=e.details,
                ) from e

            session.warn(f"Restored without a safety backup: {e.message}")
            session.advance(RestorePhase.SAFETY_BACKUP_SKIPPED)
            return

        logger.info(
            "safety_backup_taken",
            session_id=session.id,
            path=str(session.safety_artifact.path),
        )
        session.advance(RestorePhase.SAFETY_BACKUP_TAKEN)

    def _confirm(
        self,
        session: RestoreSession,
        request: RestoreRequest,
        prompt: Prompt | None,
    ) -> None:
        literal = session.required_confirmation

        if request.auto_confirm:
            logger.info("restore_auto_confirmed", session_id=session.id)
            session.advance(RestorePhase.CONFIRMED)
            return

        answer = request.confirmation
        if answer is None and prompt is not None:
            answer = _ask(prompt, f"Type '{literal}' to confirm the restore")

        if answer != literal:
            raise UserCancelled(
                "Restore operation cancelled by user",
                details={"expected": literal},
            )

        session.advance(RestorePhase.CONFIRMED)

    async def _pause_services(self, session: RestoreSession) -> None:
        for name in session.services_to_pause:
            try:
                if not await self._systemd.is_active(name):
                    logger.info("service_not_running", service=name)
                    continue
                # Recorded first: a failed stop still gets a start afterwards
                session.paused_services.append(name)
                await self._systemd.stop(name)
            except PgGuardError as e:
                logger.warning("service_stop_failed", service=name, error=str(e))
                session.warn(f"Failed to stop service {name}")

        session.advance(RestorePhase.SERVICES_PAUSED)

    async def _replace(self, session: RestoreSession) -> None:
        try:
            if session.scope == BackupScope.DATABASE:
                await self._replace_database(session)
            else:
                await self._replace_cluster(session)
        except ReplaceFailed:
            raise
        except Exception as e:
            safety_path = session.safety_artifact.path if session.safety_artifact else None
            raise ReplaceFailed(
                f"Restore of {session.label} failed: {e}. {explain_replace_failed(safety_path)}",
                details={"safety_artifact": str(safety_path) if safety_path else None},
            ) from e

        session.advance(RestorePhase.REPLACED)

    async def _verify(self, session: RestoreSession) -> None:
        try:
            session.postcondition = await self._postcondition(session)
        except Exception as e:
            warning = VerificationInconclusive(
                f"Restore finished but the postcondition query failed: {e}",
                details={"target": session.label},
            )
            logger.warning("verification_inconclusive", session_id=session.id, error=str(warning))
            session.warn(str(warning))
            return

        logger.info(
            "postcondition_verified",
            session_id=session.id,
            summary=session.summary,
            **session.postcondition,
        )
        session.advance(RestorePhase.VERIFIED)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _client(self, program: str, *args: str) -> list:
        return pg_command(
            self._config.run_as,
            program,
            "-h",
            str(self._config.socket_dir),
            "-p",
            str(self._config.port),
            "-U",
            self._config.pg_user,
            *args,
        )

    async def _replace_database(self, session: RestoreSession) -> None:
        name = session.target_name

        (await self._runner.run(self._client("dropdb", name))).check()
        logger.info("database_dropped", database=name)

        (await self._runner.run(self._client("createdb", name))).check()
        logger.info("database_created", database=name)

        result = await self._runner.feed(
            self._client("psql", "-X", "-q", "-d", name),
            self._store.open_stream(session.artifact),
        )
        self._check_psql(session, result)

    async def _replace_cluster(self, session: RestoreSession) -> None:
        restart = self._config.restart_server_for_cluster_restore

        if restart:
            # Drops every open session before the replay
            await self._restart_server()

        result = await self._runner.feed(
            self._client("psql", "-X", "-q", "-d", self._config.admin_database),
            self._store.open_stream(session.artifact),
        )
        self._check_psql(session, result)

        if restart:
            await self._restart_server()

    def _check_psql(self, session: RestoreSession, result: CommandResult) -> None:
        result.check()

        # Without ON_ERROR_STOP psql keeps going; e.g. "role already exists"
        errors = [line for line in result.stderr_text.splitlines() if "ERROR:" in line]
        if errors:
            logger.warning(
                "restore_sql_errors",
                session_id=session.id,
                count=len(errors),
                first=errors[0],
            )
            session.warn(f"psql reported {len(errors)} SQL errors during the restore")

    async def _restart_server(self) -> None:
        service = self._config.postgres_service
        await self._systemd.restart(service)

        ready = await wait_for_database(
            self._prober,
            admin_endpoint(self._config),
            admin_credentials(self._config),
            attempts=self._config.readiness_attempts,
            interval=self._config.readiness_interval,
            sleep=self._sleep,
        )
        if not ready.reachable:
            raise ReplaceFailed(
                f"PostgreSQL did not accept connections after restarting {service}",
                details={"attempts": ready.attempts},
            )

    async def _postcondition(self, session: RestoreSession) -> Dict[str, int]:
        credentials = admin_credentials(self._config)

        if session.scope == BackupScope.DATABASE:
            endpoint = admin_endpoint(self._config, session.target_name)
            async with self._prober.session(endpoint, credentials) as db:
                return {"tables": int(await db.fetchval(TABLE_COUNT_SQL) or 0)}

        async with self._prober.session(admin_endpoint(self._config), credentials) as db:
            databases = int(await db.fetchval(DATABASE_COUNT_SQL) or 0)
            roles = int(await db.fetchval(ROLE_COUNT_SQL) or 0)
        return {"databases": databases, "roles": roles}

    async def _verify_after_failure(self, session: RestoreSession) -> None:
        try:
            session.postcondition = await self._postcondition(session)
        except Exception as e:
            logger.warning("postcondition_unavailable", session_id=session.id, error=str(e))
            return

        logger.warning(
            "postcondition_after_failure",
            session_id=session.id,
            summary=session.summary,
            **session.postcondition,
        )

    async def _discard_safety_backup(self, session: RestoreSession) -> None:
        if session.safety_artifact is None:
            return
        try:
            await self._store.discard(session.safety_artifact)
        except OSError as e:
            logger.warning(
                "safety_backup_discard_failed",
                path=str(session.safety_artifact.path),
                error=str(e),
            )
            return
        session.safety_artifact = None

    async def _resume_services(self, session: RestoreSession) -> None:
        for name in session.paused_services:
            try:
                await self._systemd.start(name)
            except PgGuardError as e:
                logger.warning("service_start_failed", service=name, error=str(e))
                session.warn(f"Failed to start service {name}")
