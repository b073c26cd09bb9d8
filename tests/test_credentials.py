# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Credential Manager tests.
"""

import os
from pathlib import Path

import pytest

from pgguard.exceptions import CredentialError
from pgguard.postgres.probe import Credentials
from pgguard.services.credentials import (
    CredentialManager,
    ServiceAccount,
    exporter_account,
    parse_env_file,
)


class RecordingSession:
    def __init__(self, fail: bool = False):
        self.executed = []
        self.fail = fail

    async def execute(self, sql: str) -> None:
        if self.fail:
            raise RuntimeError('permission denied to create role')
        self.executed.append(sql)


def noop_chown(*args, **kwargs) -> None:
    return None


@pytest.fixture
def account(temp_dir: Path) -> ServiceAccount:
    return ServiceAccount(
        role="postgres_exporter",
        database="postgres",
        env_path=temp_dir / "exporter" / ".env",
        env_prefix="POSTGRES_EXPORTER",
        grants=("GRANT SELECT ON pg_stat_database TO {role}",),
        env_owner="postgres",
    )


def test_generated_passwords_are_long_and_distinct():
    manager = CredentialManager()

    first, second = manager.generate_password(), manager.generate_password()

    assert len(first) == 32
    assert first != second


def test_exporter_account_follows_the_config(test_config):
    account = exporter_account(test_config.with_updates(exporter_database="metrics"))

    assert account.role == "postgres_exporter"
    assert account.database == "metrics"
    assert account.env_path == test_config.exporter_env_path
    assert account.env_owner == "postgres"


def test_parse_env_file_skips_comments_and_strips_quotes():
    values = parse_env_file(
        "# exporter credentials\n"
        "\n"
        "POSTGRES_EXPORTER_USER=postgres_exporter\n"
        'POSTGRES_EXPORTER_PASSWORD="a=b"\n'
        "garbage\n"
    )

    assert values == {
        "POSTGRES_EXPORTER_USER": "postgres_exporter",
        "POSTGRES_EXPORTER_PASSWORD": "a=b",
    }


# ============================================================================
# Persistence
# ============================================================================

@pytest.mark.asyncio
async def test_persisted_credentials_are_owner_only(account: ServiceAccount):
    """
    CRITICAL: The credential file is never readable by other users.
    """
    manager = CredentialManager(chown=noop_chown)

    path = await manager.persist(account, Credentials("postgres_exporter", "s3cret"))

    assert path == account.env_path
    assert (path.stat().st_mode & 0o777) == 0o600
    assert path.read_text() == (
        "POSTGRES_EXPORTER_USER=postgres_exporter\n"
        "POSTGRES_EXPORTER_PASSWORD=s3cret\n"
    )
    assert await manager.load(account) == Credentials("postgres_exporter", "s3cret")
    assert not list(path.parent.glob(".*.tmp"))


@pytest.mark.asyncio
async def test_persist_hands_the_file_to_the_service_user_as_root(
    account: ServiceAccount, monkeypatch
):
    chowned = []
    monkeypatch.setattr(os, "geteuid", lambda: 0)
    manager = CredentialManager(chown=lambda path, user, group: chowned.append((user, group)))

    await manager.persist(account, Credentials("postgres_exporter", "s3cret"))

    assert chowned == [("postgres", "postgres")]


@pytest.mark.asyncio
async def test_persist_failure_raises_credential_error(account: ServiceAccount, monkeypatch):
    def failing_chown(*args, **kwargs):
        raise LookupError("no such user: postgres")

    monkeypatch.setattr(os, "geteuid", lambda: 0)
    manager = CredentialManager(chown=failing_chown)

    with pytest.raises(CredentialError):
        await manager.persist(account, Credentials("postgres_exporter", "s3cret"))

    assert not account.env_path.exists()


@pytest.mark.asyncio
async def test_load_returns_none_for_missing_or_incomplete_files(account: ServiceAccount):
    manager = CredentialManager()

    assert await manager.load(account) is None

    account.env_path.parent.mkdir(parents=True)
    account.env_path.write_text("POSTGRES_EXPORTER_USER=postgres_exporter\n")

    assert await manager.load(account) is None


# ============================================================================
# Provisioning
# ============================================================================

def test_provisioning_sql_recreates_the_role_with_grants(account: ServiceAccount):
    sql = CredentialManager().provisioning_sql(account, Credentials("postgres_exporter", "it's"))

    assert sql.splitlines() == [
        "DROP ROLE IF EXISTS postgres_exporter;",
        "CREATE ROLE postgres_exporter WITH LOGIN PASSWORD 'it''s';",
        "ALTER ROLE postgres_exporter SET search_path TO postgres_exporter, pg_catalog;",
        "GRANT CONNECT ON DATABASE postgres TO postgres_exporter;",
        "GRANT pg_monitor TO postgres_exporter;",
        "GRANT SELECT ON pg_stat_database TO postgres_exporter;",
    ]


def test_provisioning_requires_a_password(account: ServiceAccount):
    with pytest.raises(CredentialError):
        CredentialManager().provisioning_sql(account, Credentials("postgres_exporter"))


@pytest.mark.asyncio
async def test_rotate_provisions_and_persists_a_new_password(account: ServiceAccount):
    manager = CredentialManager(chown=noop_chown)
    session = RecordingSession()

    credentials = await manager.rotate(session, account)

    assert credentials.user == "postgres_exporter"
    assert len(session.executed) == 1
    assert f"PASSWORD '{credentials.password}'" in session.executed[0]
    assert await manager.load(account) == credentials


@pytest.mark.asyncio
async def test_failed_provisioning_keeps_the_old_credentials(account: ServiceAccount):
    manager = CredentialManager(chown=noop_chown)
    await manager.persist(account, Credentials("postgres_exporter", "old"))

    with pytest.raises(CredentialError):
        await manager.rotate(RecordingSession(fail=True), account)

    assert await manager.load(account) == Credentials("postgres_exporter", "old")


@pytest.mark.asyncio
async def test_ensure_reuses_persisted_credentials(account: ServiceAccount):
    manager = CredentialManager(chown=noop_chown)
    await manager.persist(account, Credentials("postgres_exporter", "kept"))
    session = RecordingSession()

    credentials = await manager.ensure(session, account)

    assert credentials.password == "kept"
    assert session.executed == []
