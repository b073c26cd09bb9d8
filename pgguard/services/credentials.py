# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pg-guard Credential Manager - Service-account credentials in one place.

Generation, persistence and rotation of the login roles used by
dependent services (the metrics exporter, for instance). Both the
initial setup flow and the Service Health Verifier's "recreate
credentials" remediation go through this module.

Credentials are persisted to a `.env`-style file readable only by its
owner (mode 0600):

    POSTGRES_EXPORTER_USER=postgres_exporter
    POSTGRES_EXPORTER_PASSWORD=...
"""

import os
import secrets
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Tuple

import aiofiles
import structlog

from pgguard.config import PgGuardConfig
from pgguard.exceptions import CredentialError
from pgguard.postgres.probe import Credentials, Session
from pgguard.postgres.sql import quote_ident, quote_literal

logger = structlog.get_logger()

# Monitoring grants for postgres_exporter beyond pg_monitor
EXPORTER_GRANTS: Tuple[str, ...] = (
    "GRANT SELECT ON ALL TABLES IN SCHEMA pg_catalog TO {role}",
    "GRANT SELECT ON ALL TABLES IN SCHEMA information_schema TO {role}",
    "GRANT EXECUTE ON FUNCTION pg_stat_file(text) TO {role}",
    "GRANT SELECT ON pg_stat_database TO {role}",
    "GRANT SELECT ON pg_stat_user_tables TO {role}",
    "GRANT SELECT ON pg_stat_user_indexes TO {role}",
    "GRANT SELECT ON pg_statio_user_tables TO {role}",
    "GRANT SELECT ON pg_statio_user_indexes TO {role}",
    "GRANT SELECT ON pg_stat_activity TO {role}",
    "GRANT SELECT ON pg_stat_replication TO {role}",
    "GRANT SELECT ON pg_stat_bgwriter TO {role}",
    "GRANT SELECT ON pg_stat_archiver TO {role}",
    "GRANT SELECT ON pg_database TO {role}",
    "GRANT SELECT ON pg_tablespace TO {role}",
)


@dataclass(frozen=True)
class ServiceAccount:
    """A login role owned by a dependent service."""

    role: str
    database: str
    env_path: Path
    env_prefix: str  # e.g. POSTGRES_EXPORTER -> POSTGRES_EXPORTER_USER
    grants: Tuple[str, ...] = ()  # Statements with a {role} placeholder
    monitoring: bool = True  # GRANT pg_monitor
    env_owner: str | None = None  # chown the .env file to this user


def exporter_account(config: PgGuardConfig) -> ServiceAccount:
    """The account used by postgres_exporter."""
    return ServiceAccount(
        role=config.exporter_user,
        database=config.exporter_database or config.admin_database,
        env_path=config.exporter_env_path,
        env_prefix="POSTGRES_EXPORTER",
        grants=EXPORTER_GRANTS,
        env_owner=config.exporter_os_user,
    )


def parse_env_file(text: str) -> Dict[str, str]:
    """Parse KEY=value lines, ignoring comments and blank lines."""
    values: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        values[key.strip()] = value
    return values


class CredentialManager:
    """
    Generate, persist and rotate service-account credentials.

    Args:
        password_bytes: Entropy of generated passwords in bytes
        chown: shutil.chown-compatible callable (injectable for tests)
    """

    def __init__(
        self,
        *,
        password_bytes: int = 24,
        chown: Callable[..., None] = shutil.chown,
    ):
        self._password_bytes = password_bytes
        self._chown = chown

    def generate_password(self) -> str:
        """A URL-safe random password (32 characters for 24 bytes)."""
        return secrets.token_urlsafe(self._password_bytes)

    async def load(self, account: ServiceAccount) -> Credentials | None:
        """
        Read persisted credentials.

        Returns:
            Credentials, or None if the file is missing or incomplete
        """
        try:
            async with aiofiles.open(account.env_path, "r") as f:
                values = parse_env_file(await f.read())
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CredentialError(
                f"Cannot read credential file: {e}",
                details={"path": str(account.env_path)},
            ) from e

        user = values.get(f"{account.env_prefix}_USER")
        password = values.get(f"{account.env_prefix}_PASSWORD")
        if not user or not password:
            return None
        return Credentials(user, password)

    async def persist(self, account: ServiceAccount, credentials: Credentials) -> Path:
        """
        Write credentials to the account's .env file with mode 0600.

        The file is created under a temp name with restrictive permissions
        and renamed into place, so the secret is never world-readable.
        """
        path = account.env_path
        temp_path = path.with_name(f".{path.name}.tmp")
        content = (
            f"{account.env_prefix}_USER={credentials.user}\n"
            f"{account.env_prefix}_PASSWORD={credentials.password}\n"
        )

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            os.close(fd)
            async with aiofiles.open(temp_path, "w") as f:
                await f.write(content)
            os.chmod(temp_path, 0o600)

            if account.env_owner and os.geteuid() == 0:
                self._chown(temp_path, account.env_owner, account.env_owner)

            temp_path.rename(path)
        except (OSError, LookupError) as e:
            temp_path.unlink(missing_ok=True)
            raise CredentialError(
                f"Cannot write credential file: {e}",
                details={"path": str(path)},
            ) from e

        logger.info("credentials_persisted", path=str(path), user=credentials.user)
        return path

    def provisioning_sql(self, account: ServiceAccount, credentials: Credentials) -> str:
        """SQL that recreates the role from scratch with its grants."""
        if not credentials.password:
            raise CredentialError("A password is required to provision a login role")

        role = quote_ident(credentials.user)
        statements: List[str] = [
            f"DROP ROLE IF EXISTS {role}",
            f"CREATE ROLE {role} WITH LOGIN PASSWORD {quote_literal(credentials.password)}",
            f"ALTER ROLE {role} SET search_path TO {role}, pg_catalog",
            f"GRANT CONNECT ON DATABASE {quote_ident(account.database)} TO {role}",
        ]
        if account.monitoring:
            statements.append(f"GRANT pg_monitor TO {role}")
        statements.extend(grant.format(role=role) for grant in account.grants)

        return ";\n".join(statements) + ";\n"

    async def provision(
        self,
        session: Session,
        account: ServiceAccount,
        credentials: Credentials,
    ) -> None:
        """
        Recreate the role through an administrative session.

        Raises:
            CredentialError: If the statements fail
        """
        try:
            await session.execute(self.provisioning_sql(account, credentials))
        except CredentialError:
            raise
        except Exception as e:
            raise CredentialError(
                f"Failed to provision role {credentials.user!r}: {e}",
                details={"database": account.database},
            ) from e

        logger.info("role_provisioned", role=credentials.user, database=account.database)

    async def rotate(self, session: Session, account: ServiceAccount) -> Credentials:
        """
        Replace the account's credentials: new password, new role, new file.

        Returns:
            The new credentials
        """
        credentials = Credentials(account.role, self.generate_password())
        await self.provision(session, account, credentials)
        await self.persist(account, credentials)
        logger.info("credentials_rotated", role=account.role)
        return credentials

    async def ensure(self, session: Session, account: ServiceAccount) -> Credentials:
        """Return persisted credentials, creating the account if there are none."""
        existing = await self.load(account)
        if existing is not None:
            return existing
        return await self.rotate(session, account)
