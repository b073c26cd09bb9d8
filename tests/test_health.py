# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Service Health Verifier tests.

The verifier must:
1. Pick the remediation from the symptom
2. Stop after max_cycles remediations and report, never raise
3. Recreate service credentials at most once per run
"""

from typing import List

import aiosqlite
import pytest

from pgguard.exceptions import ServiceError
from pgguard.postgres.probe import (
    ConnectivityProber,
    Credentials,
    DatabaseEndpoint,
    admin_credentials,
    admin_endpoint,
)
from pgguard.services.credentials import CredentialManager, exporter_account
from pgguard.services.exporter import exporter_strategies
from pgguard.services.health import (
    EndpointState,
    RemediationAction,
    ServiceHealthVerifier,
    ServiceSignal,
    VerificationOutcome,
    wait_for_database,
)
from pgguard.vault.journal import get_journal_stats

from conftest import FakePostgres, no_sleep, refuse_connect


class ScriptedService:
    """ManagedService answering probes from a script."""

    def __init__(self, config, signals: List[ServiceSignal]):
        self.name = "postgres_exporter"
        self.account = exporter_account(config)
        self.target = DatabaseEndpoint(
            database=self.account.database,
            probe_strategies=exporter_strategies(config),
            name=self.name,
        )
        self._signals = list(signals)
        self.calls: List[str] = []
        self.applied = []
        self.fail_start = False

    async def signal(self) -> ServiceSignal:
        signal = self._signals.pop(0) if len(self._signals) > 1 else self._signals[0]
        if isinstance(signal, Exception):
            raise signal
        return signal

    async def start(self) -> None:
        self.calls.append("start")
        if self.fail_start:
            raise ServiceError("Job for postgres_exporter.service failed")

    async def restart(self) -> None:
        self.calls.append("restart")

    async def apply_connection(self, strategy, credentials) -> None:
        self.calls.append("apply_connection")
        self.applied.append((strategy.name, credentials))


class NativeConnection:
    async def fetchval(self, sql):
        return 1

    async def close(self):
        pass


def accept_loopback_without_tls():
    """asyncpg.connect stand-in accepting only 127.0.0.1 with sslmode=disable."""

    async def connect(**kwargs):
        if kwargs["host"] == "127.0.0.1" and kwargs["ssl"] == "disable":
            return NativeConnection()
        raise ConnectionRefusedError(f"refused {kwargs['host']} ({kwargs['ssl']})")

    return connect


def make_verifier(config, fake_pg: FakePostgres, connect=refuse_connect) -> ServiceHealthVerifier:
    return ServiceHealthVerifier(
        ConnectivityProber.from_config(config, fake_pg, connect=connect),
        CredentialManager(chown=lambda *args, **kwargs: None),
        admin_endpoint(config),
        admin_credentials(config),
        max_cycles=config.remediation_max_cycles,
        interval=0.0,
        sleep=no_sleep,
    )


# ============================================================================
# Remediation by symptom
# ============================================================================

@pytest.mark.asyncio
async def test_connected_service_needs_no_remediation(test_config, fake_pg):
    service = ScriptedService(test_config, [ServiceSignal.CONNECTED])

    result = await make_verifier(test_config, fake_pg).verify(service)

    assert result.succeeded
    assert result.cycles == 0
    assert result.actions == []
    assert result.state == EndpointState.REACHABLE
    assert service.calls == []


@pytest.mark.asyncio
async def test_stopped_service_is_started(test_config, fake_pg):
    service = ScriptedService(test_config, [ServiceSignal.NOT_RUNNING, ServiceSignal.CONNECTED])

    result = await make_verifier(test_config, fake_pg).verify(service)

    assert result.succeeded
    assert service.calls == ["start"]
    assert [a.action for a in result.actions] == [RemediationAction.START_SERVICE]


@pytest.mark.asyncio
async def test_unresponsive_service_is_restarted(test_config, fake_pg):
    service = ScriptedService(
        test_config, [ServiceSignal.UNRESPONSIVE, ServiceSignal.CONNECTED]
    )

    result = await make_verifier(test_config, fake_pg).verify(service)

    assert result.succeeded
    assert service.calls == ["restart"]
    assert result.actions[0].symptom == ServiceSignal.UNRESPONSIVE


@pytest.mark.asyncio
async def test_probe_errors_count_as_unresponsive(test_config, fake_pg):
    service = ScriptedService(
        test_config, [RuntimeError("metrics page timed out"), ServiceSignal.CONNECTED]
    )

    result = await make_verifier(test_config, fake_pg).verify(service)

    assert result.succeeded
    assert service.calls == ["restart"]


@pytest.mark.asyncio
async def test_not_connected_rewrites_to_the_first_working_strategy(test_config, fake_pg):
    """
    The service's credentials are checked against each alternate strategy
    directly, and the first accepted one is written to the service.
    """
    service = ScriptedService(
        test_config, [ServiceSignal.NOT_CONNECTED, ServiceSignal.CONNECTED]
    )
    manager = CredentialManager(chown=lambda *args, **kwargs: None)
    await manager.persist(service.account, Credentials("postgres_exporter", "pw"))

    verifier = make_verifier(test_config, fake_pg, connect=accept_loopback_without_tls())
    result = await verifier.verify(service)

    assert result.succeeded
    assert result.cycles == 1
    assert result.actions[0].action == RemediationAction.REWRITE_CONNECTION
    assert result.actions[0].detail == "loopback_ip_no_ssl"
    assert service.applied == [
        ("loopback_ip_no_ssl", Credentials("postgres_exporter", "pw"))
    ]


@pytest.mark.asyncio
async def test_failed_remediation_is_recorded_and_the_loop_continues(test_config, fake_pg):
    service = ScriptedService(
        test_config,
        [ServiceSignal.NOT_RUNNING, ServiceSignal.NOT_RUNNING, ServiceSignal.CONNECTED],
    )
    service.fail_start = True

    result = await make_verifier(test_config, fake_pg).verify(service)

    assert result.succeeded
    assert [a.succeeded for a in result.actions] == [False, False]
    assert "failed" in result.actions[0].detail


# ============================================================================
# Bounds
# ============================================================================

@pytest.mark.asyncio
async def test_verification_gives_up_after_three_cycles(test_config, fake_pg):
    """
    CRITICAL: A service that never recovers ends the run after
    max_cycles remediations with an EXHAUSTED result instead of an
    exception.
    """
    service = ScriptedService(test_config, [ServiceSignal.UNRESPONSIVE])

    result = await make_verifier(test_config, fake_pg).verify(service)

    assert result.outcome == VerificationOutcome.EXHAUSTED
    assert not result.succeeded
    assert result.cycles == 3
    assert service.calls == ["restart", "restart", "restart"]
    assert result.state == EndpointState.UNREACHABLE
    assert result.reason == "service does not answer"


@pytest.mark.asyncio
async def test_credentials_are_recreated_at_most_once(test_config, fake_pg):
    """
    CRITICAL: When no strategy accepts the service credentials the role is
    recreated once; later cycles do not rotate the password again.
    """
    service = ScriptedService(test_config, [ServiceSignal.NOT_CONNECTED])

    result = await make_verifier(test_config, fake_pg).verify(service)

    actions = [a.action for a in result.actions]
    assert actions == [
        RemediationAction.RECREATE_CREDENTIALS,
        RemediationAction.REWRITE_CONNECTION,
        RemediationAction.REWRITE_CONNECTION,
    ]
    assert result.outcome == VerificationOutcome.EXHAUSTED
    assert result.state == EndpointState.DEGRADED

    provisioning = [sql for sql in fake_pg.executed if "CREATE ROLE postgres_exporter" in sql]
    assert len(provisioning) == 1

    # The recreated credentials were persisted and handed to the service
    persisted = await CredentialManager().load(service.account)
    assert persisted is not None
    assert service.applied[0] == ("configured", persisted)
    assert (test_config.exporter_env_path.stat().st_mode & 0o777) == 0o600


@pytest.mark.asyncio
async def test_failed_credential_recreation_is_recorded_as_such(test_config, fake_pg):
    """
    A recreation that cannot reach the server is still the recreation
    attempt of this run; later cycles fall back to strategy rewriting.
    """
    fake_pg.up = False
    service = ScriptedService(test_config, [ServiceSignal.NOT_CONNECTED])

    result = await make_verifier(test_config, fake_pg).verify(service)

    first = result.actions[0]
    assert first.action == RemediationAction.RECREATE_CREDENTIALS
    assert first.succeeded is False
    assert first.detail
    assert [a.action for a in result.actions[1:]] == [RemediationAction.REWRITE_CONNECTION] * 2
    assert result.outcome == VerificationOutcome.EXHAUSTED
    assert service.applied == []


@pytest.mark.asyncio
async def test_max_cycles_is_configurable(test_config, fake_pg):
    config = test_config.with_updates(remediation_max_cycles=1)
    service = ScriptedService(config, [ServiceSignal.NOT_RUNNING])

    result = await make_verifier(config, fake_pg).verify(service)

    assert result.cycles == 1
    assert service.calls == ["start"]


@pytest.mark.asyncio
async def test_verifications_are_journaled(runtime):
    service = ScriptedService(runtime["config"], [ServiceSignal.NOT_RUNNING, ServiceSignal.CONNECTED])

    await runtime["verifier"].verify(service)

    async with aiosqlite.connect(runtime["journal_path"]) as db:
        stats = await get_journal_stats(db)

    assert stats["verifications_by_outcome"] == {"succeeded": 1}


# ============================================================================
# Readiness polling
# ============================================================================

@pytest.mark.asyncio
async def test_wait_for_database_polls_until_reachable(test_config, fake_pg):
    fake_pg.up = False
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 2:
            fake_pg.up = True

    prober = ConnectivityProber.from_config(test_config, fake_pg, connect=refuse_connect)
    result = await wait_for_database(
        prober,
        admin_endpoint(test_config),
        admin_credentials(test_config),
        attempts=5,
        interval=2.0,
        sleep=sleep,
    )

    assert result.reachable
    assert sleeps == [2.0, 2.0]


@pytest.mark.asyncio
async def test_wait_for_database_gives_up_at_the_ceiling(test_config, fake_pg):
    fake_pg.up = False
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    prober = ConnectivityProber.from_config(test_config, fake_pg, connect=refuse_connect)
    result = await wait_for_database(
        prober,
        admin_endpoint(test_config),
        admin_credentials(test_config),
        attempts=3,
        interval=1.0,
        sleep=sleep,
    )

    assert not result.reachable
    assert len(sleeps) == 2
