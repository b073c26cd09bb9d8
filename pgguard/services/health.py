# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pg-guard Service Health Verifier - Bounded self-healing for dependent services.

After a configuration change (install, TLS rotation, credential rotation)
a dependent service such as the metrics exporter is probed, and each
failing probe triggers one remediation chosen by symptom:

    NOT_RUNNING    -> start the service
    NOT_CONNECTED  -> rewrite its connection to the first strategy that a
                      direct client check accepts; if none does, recreate
                      the service-account credentials (once per run)
    UNRESPONSIVE   -> restart the service

At most max_cycles remediation cycles run. Running out of cycles is an
EXHAUSTED result, logged as a warning: the calling flow carries on, since
a broken exporter must never keep the database itself from being usable.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, List, Protocol

import structlog

from pgguard.errors import explain_remediation_exhausted
from pgguard.postgres.probe import (
    ConnectionStrategy,
    ConnectivityProber,
    Credentials,
    DatabaseEndpoint,
    ProbeResult,
)
from pgguard.services.credentials import CredentialManager, ServiceAccount
from pgguard.vault.journal import record_verification, write_journal

logger = structlog.get_logger()


class ServiceSignal(str, Enum):
    """What a probe of a dependent service observed."""

    CONNECTED = "connected"
    NOT_RUNNING = "not_running"
    NOT_CONNECTED = "not_connected"  # Running, reports no database connection
    UNRESPONSIVE = "unresponsive"  # Running, no usable answer


class EndpointState(str, Enum):
    UNKNOWN = "unknown"
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"
    DEGRADED = "degraded"


class RemediationAction(str, Enum):
    START_SERVICE = "start_service"
    RESTART_SERVICE = "restart_service"
    REWRITE_CONNECTION = "rewrite_connection"
    RECREATE_CREDENTIALS = "recreate_credentials"


class VerificationOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


_STATE_FOR_SIGNAL = {
    ServiceSignal.CONNECTED: (EndpointState.REACHABLE, None),
    ServiceSignal.NOT_RUNNING: (EndpointState.UNREACHABLE, "service is not running"),
    ServiceSignal.NOT_CONNECTED: (EndpointState.DEGRADED, "service is not connected to the database"),
    ServiceSignal.UNRESPONSIVE: (EndpointState.UNREACHABLE, "service does not answer"),
}


class ManagedService(Protocol):
    """A dependent service the verifier can probe and repair."""

    name: str
    account: ServiceAccount
    target: DatabaseEndpoint  # Database it connects to, strategies in preference order

    async def signal(self) -> ServiceSignal: ...

    async def start(self) -> None: ...

    async def restart(self) -> None: ...

    async def apply_connection(
        self,
        strategy: ConnectionStrategy,
        credentials: Credentials,
    ) -> None:
        """Point the service at the database through a strategy and restart it."""
        ...


@dataclass
class ServiceEndpoint:
    """A dependent service under verification."""

    name: str
    target: DatabaseEndpoint
    state: EndpointState = EndpointState.UNKNOWN
    reason: str | None = None
    remediation_attempts: int = 0
    max_attempts: int = 3

    @property
    def probe_strategies(self):
        return self.target.probe_strategies

    def observe(self, signal: ServiceSignal) -> None:
        self.state, self.reason = _STATE_FOR_SIGNAL[signal]


@dataclass
class RemediationRecord:
    """One remediation cycle."""

    cycle: int
    symptom: ServiceSignal
    action: RemediationAction
    succeeded: bool
    detail: str = ""

    def to_dict(self) -> dict:
        return {
            "cycle": self.cycle,
            "symptom": self.symptom.value,
            "action": self.action.value,
            "succeeded": self.succeeded,
            "detail": self.detail,
        }


@dataclass
class VerificationResult:
    """Typed result of one verification run."""

    service: str
    outcome: VerificationOutcome
    state: EndpointState
    reason: str | None
    cycles: int
    actions: List[RemediationRecord] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome == VerificationOutcome.SUCCEEDED


async def wait_for_database(
    prober: ConnectivityProber,
    endpoint: DatabaseEndpoint,
    credentials: Credentials,
    *,
    attempts: int = 30,
    interval: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ProbeResult:
    """
    Poll the server until a probe succeeds or the attempt ceiling is hit.

    Returns:
        The last ProbeResult (reachable or not)
    """
    result = ProbeResult(reachable=False)

    for attempt in range(1, attempts + 1):
        result = await prober.probe(endpoint, credentials)
        if result.reachable:
            logger.info("database_ready", attempt=attempt, method=result.method)
            return result
        if attempt < attempts:
            logger.debug("database_not_ready", attempt=attempt, attempts=attempts)
            await sleep(interval)

    logger.warning("database_not_ready_giving_up", attempts=attempts)
    return result


class ServiceHealthVerifier:
    """
    Drive the probe -> remediate -> probe loop for one service.

    Args:
        prober: Used for direct client checks and admin sessions
        credentials: Credential Manager used for the recreate remediation
        admin_endpoint: Where the superuser session for role recreation goes
        admin_credentials: Superuser credentials
        max_cycles: Remediation cycle ceiling
        interval: Seconds to wait after each remediation
        sleep: Injectable asyncio.sleep
        journal_path: Record each run in the journal when set
    """

    def __init__(
        self,
        prober: ConnectivityProber,
        credentials: CredentialManager,
        admin_endpoint: DatabaseEndpoint,
        admin_credentials: Credentials,
        *,
        max_cycles: int = 3,
        interval: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        journal_path: Path | None = None,
    ):
        self._prober = prober
        self._credentials = credentials
        self._admin_endpoint = admin_endpoint
        self._admin_credentials = admin_credentials
        self.max_cycles = max_cycles
        self.interval = interval
        self._sleep = sleep
        self._journal_path = journal_path

    async def verify(self, service: ManagedService) -> VerificationResult:
        """
        Verify a service, remediating at most max_cycles times.

        Never raises for an unhealthy service: the result says whether it
        recovered.
        """
        started = time.monotonic()
        endpoint = ServiceEndpoint(
            name=service.name,
            target=service.target,
            max_attempts=self.max_cycles,
        )
        actions: List[RemediationRecord] = []
        credentials_recreated = False

        logger.info("verification_started", service=service.name, max_cycles=self.max_cycles)

        while True:
            signal = await self._probe(service)
            endpoint.observe(signal)
            logger.info(
                "verification_probe",
                service=service.name,
                cycle=endpoint.remediation_attempts,
                signal=signal.value,
                state=endpoint.state.value,
            )

            if signal == ServiceSignal.CONNECTED:
                outcome = VerificationOutcome.SUCCEEDED
                break

            if endpoint.remediation_attempts >= endpoint.max_attempts:
                outcome = VerificationOutcome.EXHAUSTED
                logger.warning(
                    "remediation_exhausted",
                    service=service.name,
                    cycles=endpoint.remediation_attempts,
                    reason=endpoint.reason,
                    hint=explain_remediation_exhausted(service.name, endpoint.remediation_attempts),
                )
                break

            endpoint.remediation_attempts += 1
            record = await self._remediate(
                service, endpoint.remediation_attempts, signal, credentials_recreated
            )
            if record.action == RemediationAction.RECREATE_CREDENTIALS:
                credentials_recreated = True
            actions.append(record)

            logger.info(
                "remediation_applied",
                service=service.name,
                cycle=record.cycle,
                symptom=record.symptom.value,
                action=record.action.value,
                succeeded=record.succeeded,
                detail=record.detail,
            )

            await self._sleep(self.interval)

        result = VerificationResult(
            service=service.name,
            outcome=outcome,
            state=endpoint.state,
            reason=endpoint.reason,
            cycles=endpoint.remediation_attempts,
            actions=actions,
            duration_seconds=round(time.monotonic() - started, 3),
        )

        await write_journal(
            self._journal_path,
            record_verification,
            result.service,
            result.outcome.value,
            result.cycles,
            [a.to_dict() for a in result.actions],
        )

        logger.info(
            "verification_finished",
            service=service.name,
            outcome=outcome.value,
            cycles=result.cycles,
        )
        return result

    async def _probe(self, service: ManagedService) -> ServiceSignal:
        try:
            return await service.signal()
        except Exception as e:
            logger.warning("service_probe_error", service=service.name, error=str(e))
            return ServiceSignal.UNRESPONSIVE

    async def _remediate(
        self,
        service: ManagedService,
        cycle: int,
        signal: ServiceSignal,
        credentials_recreated: bool,
    ) -> RemediationRecord:
        action = {
            ServiceSignal.NOT_RUNNING: RemediationAction.START_SERVICE,
            ServiceSignal.UNRESPONSIVE: RemediationAction.RESTART_SERVICE,
        }.get(signal, RemediationAction.REWRITE_CONNECTION)

        try:
            if action == RemediationAction.START_SERVICE:
                await service.start()
                return RemediationRecord(cycle, signal, action, True)

            if action == RemediationAction.RESTART_SERVICE:
                await service.restart()
                return RemediationRecord(cycle, signal, action, True)

            return await self._reconnect(service, cycle, signal, credentials_recreated)

        except Exception as e:
            logger.warning(
                "remediation_failed",
                service=service.name,
                cycle=cycle,
                action=action.value,
                error=str(e),
            )
            return RemediationRecord(cycle, signal, action, False, str(e))

    async def _first_working_strategy(
        self,
        service: ManagedService,
        credentials: Credentials,
    ) -> ConnectionStrategy | None:
        for strategy in service.target.probe_strategies:
            if await self._prober.check_strategy(strategy, credentials, service.target.database):
                return strategy
            logger.debug("alternate_strategy_rejected", service=service.name, strategy=strategy.name)
        return None

    async def _reconnect(
        self,
        service: ManagedService,
        cycle: int,
        signal: ServiceSignal,
        credentials_recreated: bool,
    ) -> RemediationRecord:
        credentials = await self._credentials.load(service.account)

        if credentials is not None:
            strategy = await self._first_working_strategy(service, credentials)
            if strategy is not None:
                await service.apply_connection(strategy, credentials)
                return RemediationRecord(
                    cycle, signal, RemediationAction.REWRITE_CONNECTION, True, strategy.name
                )

        if credentials_recreated:
            return RemediationRecord(
                cycle,
                signal,
                RemediationAction.REWRITE_CONNECTION,
                False,
                "no connection strategy accepted the service credentials",
            )

        # Every alternate failed: start over with a fresh role and password
        try:
            async with self._prober.session(
                self._admin_endpoint, self._admin_credentials
            ) as session:
                credentials = await self._credentials.rotate(session, service.account)

            strategy = await self._first_working_strategy(service, credentials)
            await service.apply_connection(
                strategy or service.target.probe_strategies[0], credentials
            )
        except Exception as e:
            logger.warning(
                "remediation_failed",
                service=service.name,
                cycle=cycle,
                action=RemediationAction.RECREATE_CREDENTIALS.value,
                error=str(e),
            )
            return RemediationRecord(
                cycle, signal, RemediationAction.RECREATE_CREDENTIALS, False, str(e)
            )

        return RemediationRecord(
            cycle,
            signal,
            RemediationAction.RECREATE_CREDENTIALS,
            strategy is not None,
            strategy.name if strategy else "recreated role not reachable by any strategy",
        )
