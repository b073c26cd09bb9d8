# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pg-guard Connectivity Prober - Find one working way to reach the server.

No single topology is assumed to be correct. Strategies are tried in a
fixed order, cheapest and most trusted first:

1. local Unix socket as the OS superuser (peer authentication, via psql)
2. loopback TCP without a password (trust authentication, via psql)
3. authenticated TCP with a password (asyncpg), only if a password is
   known; TLS is required when the server is reached by its domain name

A probe never retries. Waiting for a server to come up is done by the
callers (see pgguard.services.health.wait_for_database).
"""

import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Protocol, Tuple
from urllib.parse import quote

import structlog

from pgguard.config import PgGuardConfig
from pgguard.exceptions import ProbeError
from pgguard.postgres.commands import CommandRunner, pg_command

logger = structlog.get_logger()

_KEYWORD_NEEDS_QUOTING = re.compile(r"[\s'\\]")


class Transport(str, Enum):
    """How a strategy talks to the server."""

    PSQL = "psql"  # psql child process, runs as the OS superuser
    NATIVE = "native"  # asyncpg connection from this process


@dataclass(frozen=True)
class Credentials:
    """A database role and, if known, its password."""

    user: str
    password: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class ConnectionStrategy:
    """One way of reaching a database."""

    name: str
    host: str  # Host name, IP address, or Unix socket directory
    port: int = 5432
    sslmode: str = "disable"
    transport: Transport = Transport.NATIVE
    requires_password: bool = True

    @property
    def is_socket(self) -> bool:
        return self.host.startswith("/")

    def keyword_dsn(self, credentials: Credentials, database: str, **extra: Any) -> str:
        """Render a libpq keyword/value connection string."""
        params = {
            "user": credentials.user,
            "password": credentials.password,
            "host": self.host,
            "port": self.port,
            "dbname": database,
            "sslmode": self.sslmode,
            **extra,
        }
        return " ".join(
            f"{key}={_keyword_value(str(value))}"
            for key, value in params.items()
            if value is not None
        )

    def dsn(self, credentials: Credentials, database: str) -> str:
        """
        Render the connection string a libpq-based service is configured with.

        TCP strategies use the URL form, socket strategies the keyword form.
        """
        if self.is_socket:
            return self.keyword_dsn(credentials, database)

        auth = quote(credentials.user, safe="")
        if credentials.password:
            auth += ":" + quote(credentials.password, safe="")
        return (
            f"postgresql://{auth}@{self.host}:{self.port}/"
            f"{quote(database, safe='')}?sslmode={self.sslmode}"
        )


def _keyword_value(value: str) -> str:
    if value and not _KEYWORD_NEEDS_QUOTING.search(value):
        return value
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


@dataclass(frozen=True)
class DatabaseEndpoint:
    """A database plus the ordered strategies for reaching it."""

    database: str
    probe_strategies: Tuple[ConnectionStrategy, ...]
    name: str = "postgresql"


@dataclass
class ProbeResult:
    """Outcome of one probe."""

    reachable: bool
    strategy: ConnectionStrategy | None = None
    attempts: Dict[str, str] = field(default_factory=dict)  # strategy name -> failure

    @property
    def method(self) -> str | None:
        return self.strategy.name if self.strategy else None


def admin_strategies(config: PgGuardConfig) -> Tuple[ConnectionStrategy, ...]:
    """The superuser probe order for a configured server."""
    if config.domain_name:
        authenticated = ConnectionStrategy(
            "authenticated_tls", config.domain_name, config.port, "require"
        )
    else:
        authenticated = ConnectionStrategy(
            "authenticated_tcp", config.host, config.port, "prefer"
        )

    return (
        ConnectionStrategy(
            "local_socket",
            str(config.socket_dir),
            config.port,
            transport=Transport.PSQL,
            requires_password=False,
        ),
        ConnectionStrategy(
            "loopback_trust",
            "127.0.0.1",
            config.port,
            transport=Transport.PSQL,
            requires_password=False,
        ),
        authenticated,
    )


def admin_endpoint(config: PgGuardConfig, database: str | None = None) -> DatabaseEndpoint:
    return DatabaseEndpoint(
        database=database or config.admin_database,
        probe_strategies=admin_strategies(config),
    )


def admin_credentials(config: PgGuardConfig) -> Credentials:
    return Credentials(config.pg_user, config.admin_password)


# ============================================================================
# Sessions
# ============================================================================

class Session(Protocol):
    """A working connection obtained through a strategy."""

    strategy: ConnectionStrategy

    async def fetchval(self, sql: str) -> str | None: ...

    async def fetchcol(self, sql: str) -> List[str]: ...

    async def execute(self, sql: str) -> None: ...

    async def close(self) -> None: ...


class PsqlSession:
    """
    Session that runs each statement through a psql child process.

    psql is started with -X (no psqlrc), -w (never prompt for a password)
    and ON_ERROR_STOP, in unaligned tuples-only mode.
    """

    def __init__(
        self,
        runner: CommandRunner,
        run_as: str | None,
        strategy: ConnectionStrategy,
        credentials: Credentials,
        database: str,
        timeout: float,
    ):
        self.strategy = strategy
        self._runner = runner
        self._timeout = timeout
        conninfo = strategy.keyword_dsn(
            Credentials(credentials.user),
            database,
            connect_timeout=max(1, int(timeout)),
        )
        self._argv = pg_command(
            run_as,
            "psql",
            "-X",
            "-w",
            "-q",
            "-t",
            "-A",
            "-v",
            "ON_ERROR_STOP=1",
            "-d",
            conninfo,
        )

    async def _query(self, sql: str) -> List[str]:
        result = await self._runner.run(self._argv + ["-c", sql], timeout=self._timeout * 6)
        result.check()
        return [line for line in result.stdout_text.splitlines() if line.strip()]

    async def fetchval(self, sql: str) -> str | None:
        rows = await self._query(sql)
        return rows[0].strip() if rows else None

    async def fetchcol(self, sql: str) -> List[str]:
        return [row.strip() for row in await self._query(sql)]

    async def execute(self, sql: str) -> None:
        # Via stdin so secrets never appear in the process list
        result = await self._runner.run(
            self._argv + ["-f", "-"],
            input=sql.encode("utf-8"),
            timeout=self._timeout * 6,
        )
        result.check()

    async def close(self) -> None:
        pass


class NativeSession:
    """Session over an asyncpg connection."""

    def __init__(self, strategy: ConnectionStrategy, connection: Any):
        self.strategy = strategy
        self._connection = connection

    async def fetchval(self, sql: str) -> str | None:
        value = await self._connection.fetchval(sql)
        return None if value is None else str(value)

    async def fetchcol(self, sql: str) -> List[str]:
        rows = await self._connection.fetch(sql)
        return [str(row[0]) for row in rows]

    async def execute(self, sql: str) -> None:
        await self._connection.execute(sql)

    async def close(self) -> None:
        await self._connection.close()


async def _asyncpg_connect(**kwargs: Any) -> Any:
    import asyncpg

    return await asyncpg.connect(**kwargs)


# ============================================================================
# Prober
# ============================================================================

class ConnectivityProber:
    """
    Try connection strategies in order and report the first that works.

    Args:
        runner: Runs psql for PSQL-transport strategies
        run_as: OS account psql runs as
        timeout: Per-attempt connect timeout in seconds
        connect: asyncpg.connect-compatible coroutine for NATIVE strategies
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        run_as: str | None = "postgres",
        timeout: float = 5.0,
        connect: Callable[..., Awaitable[Any]] | None = None,
    ):
        self._runner = runner
        self._run_as = run_as
        self._timeout = timeout
        self._connect = connect or _asyncpg_connect

    @classmethod
    def from_config(
        cls,
        config: PgGuardConfig,
        runner: CommandRunner,
        connect: Callable[..., Awaitable[Any]] | None = None,
    ) -> "ConnectivityProber":
        return cls(runner, run_as=config.run_as, timeout=config.connect_timeout, connect=connect)

    async def open(
        self,
        strategy: ConnectionStrategy,
        credentials: Credentials,
        database: str,
    ) -> Session:
        """
        Open a session through one strategy and check it with SELECT 1.

        Raises:
            Whatever the transport raises when the connection fails
        """
        if strategy.transport == Transport.PSQL:
            psql_session = PsqlSession(
                self._runner, self._run_as, strategy, credentials, database, self._timeout
            )
            await psql_session.fetchval("SELECT 1")
            return psql_session

        connection = await self._connect(
            host=strategy.host,
            port=strategy.port,
            user=credentials.user,
            password=credentials.password,
            database=database,
            ssl=strategy.sslmode,
            timeout=self._timeout,
        )
        native_session = NativeSession(strategy, connection)
        try:
            await native_session.fetchval("SELECT 1")
        except Exception:
            await native_session.close()
            raise
        return native_session

    async def check_strategy(
        self,
        strategy: ConnectionStrategy,
        credentials: Credentials,
        database: str,
    ) -> bool:
        """
        Direct client check: can these credentials connect this way?

        Returns:
            True if a session could be opened
        """
        try:
            session = await self.open(strategy, credentials, database)
        except Exception as e:
            logger.debug(
                "strategy_check_failed",
                strategy=strategy.name,
                user=credentials.user,
                error=str(e),
            )
            return False

        await session.close()
        return True

    async def _first_session(
        self,
        endpoint: DatabaseEndpoint,
        credentials: Credentials,
    ) -> Tuple[Session | None, Dict[str, str]]:
        attempts: Dict[str, str] = {}

        for strategy in endpoint.probe_strategies:
            if strategy.requires_password and not credentials.password:
                attempts[strategy.name] = "skipped: no password known"
                continue

            try:
                return await self.open(strategy, credentials, endpoint.database), attempts
            except Exception as e:
                attempts[strategy.name] = str(e) or type(e).__name__

        return None, attempts

    async def probe(
        self,
        endpoint: DatabaseEndpoint,
        credentials: Credentials,
    ) -> ProbeResult:
        """
        Find the first strategy that reaches the endpoint.

        Args:
            endpoint: Database and ordered strategies
            credentials: Role to connect as

        Returns:
            ProbeResult naming the working strategy, or unreachable with the
            failure of every attempt
        """
        session, attempts = await self._first_session(endpoint, credentials)

        if session is None:
            logger.warning(
                "probe_unreachable",
                endpoint=endpoint.name,
                database=endpoint.database,
                attempts=attempts,
            )
            return ProbeResult(reachable=False, attempts=attempts)

        await session.close()
        logger.info(
            "probe_reachable",
            endpoint=endpoint.name,
            database=endpoint.database,
            method=session.strategy.name,
        )
        return ProbeResult(reachable=True, strategy=session.strategy, attempts=attempts)

    @asynccontextmanager
    async def session(
        self,
        endpoint: DatabaseEndpoint,
        credentials: Credentials,
    ) -> AsyncIterator[Session]:
        """
        Open a session through the first working strategy.

        Raises:
            ProbeError: If no strategy reaches the endpoint
        """
        session, attempts = await self._first_session(endpoint, credentials)

        if session is None:
            raise ProbeError(
                f"Cannot connect to database {endpoint.database!r}",
                details={"attempts": attempts},
            )

        logger.debug("session_opened", database=endpoint.database, method=session.strategy.name)
        try:
            yield session
        finally:
            await session.close()
