# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pg-guard Core - Wiring the components into one runtime.

The CLIs (and any provisioning script embedding pg-guard) build a Runtime
once per invocation, drive backups, restores and verifications through
it, and release it at the end.
"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, TypedDict

import httpx
import structlog

from pgguard.backup.manager import BackupManager
from pgguard.backup.restore import RestoreOrchestrator
from pgguard.config import BackupScope, PgGuardConfig
from pgguard.exceptions import JournalError
from pgguard.postgres.commands import CommandRunner, SubprocessRunner
from pgguard.postgres.probe import ConnectivityProber, admin_credentials, admin_endpoint
from pgguard.services.credentials import CredentialManager
from pgguard.services.exporter import PostgresExporterService
from pgguard.services.health import ManagedService, ServiceHealthVerifier, VerificationResult
from pgguard.services.systemd import SystemdController
from pgguard.vault.store import ArtifactStore

logger = structlog.get_logger()


class Runtime(TypedDict):
    """Components shared by one invocation."""

    config: PgGuardConfig
    runner: CommandRunner
    journal_path: Path | None
    store: ArtifactStore
    prober: ConnectivityProber
    systemd: SystemdController
    backups: BackupManager
    restorer: RestoreOrchestrator
    credentials: CredentialManager
    verifier: ServiceHealthVerifier
    http_transport: httpx.AsyncBaseTransport | None  # None: real HTTP


async def initialize_runtime(
    config: PgGuardConfig,
    *,
    runner: CommandRunner | None = None,
    connect: Callable[..., Awaitable[Any]] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], datetime] = datetime.now,
    credentials: CredentialManager | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> Runtime:
    """
    Initialize runtime state for one invocation.

    Creates the backup directories and the journal, then builds every
    component from the configuration.

    Args:
        config: pg-guard configuration
        runner: Command runner (defaults to real subprocesses)
        connect: asyncpg.connect replacement for password strategies
        sleep: Injectable asyncio.sleep for every polling loop
        clock: Clock used to stamp artifact names
        credentials: Credential Manager (defaults to one with default settings)
        http_transport: httpx transport for the exporter metrics probe

    Returns:
        Initialized Runtime dictionary
    """
    from pgguard.vault.journal import init_journal_db

    runner = runner or SubprocessRunner(chunk_size=config.chunk_size)

    for scope in BackupScope:
        config.scope_dir(scope).mkdir(parents=True, exist_ok=True)

    journal_path = config.journal_path
    if journal_path is not None:
        try:
            await init_journal_db(journal_path)
        except JournalError as e:
            # Audit aid only; the tools keep working without it
            logger.warning("journal_disabled", path=str(journal_path), error=str(e))
            journal_path = None

    store = ArtifactStore.from_config(config, clock=clock)
    prober = ConnectivityProber.from_config(config, runner, connect=connect)
    systemd = SystemdController(runner, sleep=sleep)
    backups = BackupManager(config, store, runner, journal_path=journal_path)
    credentials = credentials or CredentialManager()

    restorer = RestoreOrchestrator(
        config,
        store,
        backups,
        runner,
        prober,
        systemd,
        sleep=sleep,
        journal_path=journal_path,
    )
    verifier = ServiceHealthVerifier(
        prober,
        credentials,
        admin_endpoint(config),
        admin_credentials(config),
        max_cycles=config.remediation_max_cycles,
        interval=config.remediation_interval,
        sleep=sleep,
        journal_path=journal_path,
    )

    logger.debug(
        "runtime_initialized",
        backup_root=str(config.backup_root),
        journal=str(journal_path) if journal_path else None,
    )

    return Runtime(
        config=config,
        runner=runner,
        journal_path=journal_path,
        store=store,
        prober=prober,
        systemd=systemd,
        backups=backups,
        restorer=restorer,
        credentials=credentials,
        verifier=verifier,
        http_transport=http_transport,
    )


def exporter_service(runtime: Runtime) -> PostgresExporterService:
    """The metrics exporter, bound to this runtime's systemd controller."""
    return PostgresExporterService(
        runtime["config"],
        runtime["systemd"],
        transport=runtime["http_transport"],
    )


async def run_post_change_verification(
    runtime: Runtime,
    service: ManagedService | None = None,
) -> VerificationResult:
    """
    Verify a dependent service after a configuration change.

    Meant as the last step of install, TLS rotation and credential rotation
    flows. An exhausted verification is logged as a warning and returned,
    never raised: the calling flow decides what to do with it.

    Args:
        runtime: Initialized runtime
        service: Service to verify (defaults to the metrics exporter)

    Returns:
        VerificationResult of the run
    """
    service = service or exporter_service(runtime)
    result = await runtime["verifier"].verify(service)

    if not result.succeeded:
        logger.warning(
            "post_change_verification_incomplete",
            service=result.service,
            state=result.state.value,
            reason=result.reason,
        )
    return result


async def shutdown_runtime(runtime: Runtime) -> None:
    """Release the runtime.

    Every component opens its connections and child processes per call, so
    there is nothing long-lived to close.
    """
    logger.debug(
        "runtime_shutdown_complete",
        journal=str(runtime["journal_path"]) if runtime["journal_path"] else None,
    )
