# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for pg-guard tests.

Provides a scripted PostgreSQL stand-in (FakePostgres) that answers the
client tools and systemctl calls pg-guard makes, plus configuration and
runtime helpers.
"""

import gzip
import re
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncIterable, Dict, Generator, List, Sequence

import pytest
import pytest_asyncio

from pgguard.config import PgGuardConfig
from pgguard.postgres.commands import CommandResult, command_error

_DBNAME = re.compile(r"dbname=(\S+)")
_DATNAME = re.compile(r"datname = '([^']*)'")


class FakePostgres:
    """
    CommandRunner simulating a PostgreSQL server managed by systemd.

    Dumps are plain SQL with one statement per line:

        CREATE ROLE app;
        CREATE DATABASE sales;
        \\connect sales
        CREATE TABLE public.t1 (id integer);

    and restoring them replays exactly those statements.
    """

    def __init__(self, databases: Dict[str, List[str]] | None = None):
        self.databases: Dict[str, List[str]] = {"postgres": []}
        self.databases.update(databases or {})
        self.roles = {"postgres"}
        self.active = {"postgresql"}
        self.up = True  # Accepting connections
        self.fail_programs: set = set()  # Programs exiting with status 1
        self.fail_units: set = set()  # systemd units failing to start
        self.fail_feed = False  # psql restores exit with status 2
        self.feed_stderr = b""  # Extra stderr of psql restores
        self.calls: List[List[str]] = []
        self.executed: List[str] = []  # SQL sent with psql -f -

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def strip_sudo(argv: Sequence[str]) -> List[str]:
        argv = list(argv)
        if argv[:2] == ["sudo", "-n"]:
            return argv[4:]
        return argv

    @staticmethod
    def _option(argv: List[str], flag: str) -> str | None:
        if flag in argv:
            index = argv.index(flag)
            if index + 1 < len(argv):
                return argv[index + 1]
        return None

    def _database_of(self, argv: List[str]) -> str:
        value = self._option(argv, "-d") or "postgres"
        match = _DBNAME.search(value)
        return match.group(1) if match else value

    def programs(self) -> List[str]:
        return [self.strip_sudo(argv)[0] for argv in self.calls]

    def systemctl_calls(self, action: str) -> List[str]:
        return [
            argv[-1]
            for argv in self.calls
            if argv[0] == "systemctl" and argv[1] == action
        ]

    def dump_database(self, name: str) -> str:
        return "".join(
            f"CREATE TABLE public.{table} (id integer);\n"
            for table in self.databases[name]
        )

    def dump_cluster(self) -> str:
        lines = [f"CREATE ROLE {role};\n" for role in sorted(self.roles)]
        for name in sorted(self.databases):
            if name != "postgres":
                lines.append(f"CREATE DATABASE {name};\n")
            lines.append(f"\\connect {name}\n")
            lines.append(self.dump_database(name))
        return "".join(lines)

    def snapshot(self) -> tuple:
        return (
            {name: list(tables) for name, tables in self.databases.items()},
            set(self.roles),
        )

    def _fail(self, argv: List[str], stderr: bytes, returncode: int = 1) -> CommandResult:
        return CommandResult(tuple(argv), returncode, b"", stderr)

    # ------------------------------------------------------------------
    # CommandRunner
    # ------------------------------------------------------------------

    async def run(self, argv, *, input=None, env=None, timeout=None) -> CommandResult:
        self.calls.append(list(argv))
        args = self.strip_sudo(argv)
        program = args[0]

        if program in self.fail_programs:
            return self._fail(args, f"{program}: simulated failure".encode())

        if program == "systemctl":
            return self._systemctl(args)

        if not self.up:
            return self._fail(args, b"could not connect to server", returncode=2)

        if program == "dropdb":
            name = args[-1]
            if name not in self.databases:
                return self._fail(args, f'database "{name}" does not exist'.encode())
            del self.databases[name]
            return CommandResult(tuple(args), 0)

        if program == "createdb":
            self.databases[args[-1]] = []
            return CommandResult(tuple(args), 0)

        if program == "psql":
            database = self._database_of(args)
            if database not in self.databases:
                return self._fail(args, f'database "{database}" does not exist'.encode(), 2)

            if "-f" in args:
                self.executed.append((input or b"").decode())
                return CommandResult(tuple(args), 0)

            sql = self._option(args, "-c") or ""
            return CommandResult(tuple(args), 0, self._answer(sql, database).encode())

        return self._fail(args, f"unexpected program {program}".encode(), 127)

    def _systemctl(self, args: List[str]) -> CommandResult:
        action, name = args[1], args[-1]

        if action == "is-active":
            return CommandResult(tuple(args), 0 if name in self.active else 3)
        if action == "daemon-reload":
            return CommandResult(tuple(args), 0)
        if name in self.fail_units and action in ("start", "restart"):
            return self._fail(args, f"Job for {name}.service failed".encode())
        if action in ("start", "restart"):
            self.active.add(name)
        elif action == "stop":
            self.active.discard(name)
        return CommandResult(tuple(args), 0)

    def _answer(self, sql: str, database: str) -> str:
        if sql == "SELECT 1":
            return "1\n"
        if "FROM pg_database WHERE datname" in sql:
            match = _DATNAME.search(sql)
            return "1\n" if match and match.group(1) in self.databases else ""
        if "information_schema.tables" in sql:
            return f"{len(self.databases[database])}\n"
        if "COUNT(*) FROM pg_database" in sql:
            return f"{len(self.databases)}\n"
        if "FROM pg_roles" in sql:
            return f"{len(self.roles)}\n"
        if "SELECT datname FROM pg_database" in sql:
            return "".join(f"{name}\n" for name in sorted(self.databases) if name != "postgres")
        return ""

    async def stream(self, argv):
        self.calls.append(list(argv))
        args = self.strip_sudo(argv)
        program = args[0]

        if program in self.fail_programs or not self.up:
            raise command_error(args, 1, f"{program}: simulated failure".encode())

        if program == "pg_dumpall":
            text = self.dump_cluster()
        else:
            name = self._database_of(args)
            if name not in self.databases:
                raise command_error(args, 1, f'database "{name}" does not exist'.encode())
            text = self.dump_database(name)

        data = text.encode()
        for start in range(0, len(data), 64):
            yield data[start:start + 64]

    async def feed(self, argv, source: AsyncIterable[bytes]) -> CommandResult:
        self.calls.append(list(argv))
        args = self.strip_sudo(argv)

        chunks = [chunk async for chunk in source]
        if self.fail_feed or not self.up:
            return self._fail(args, b"psql: error: connection lost", 2)

        current = self._database_of(args)
        for line in b"".join(chunks).decode().splitlines():
            line = line.strip()
            if line.startswith("CREATE ROLE "):
                self.roles.add(line[len("CREATE ROLE "):].rstrip(";"))
            elif line.startswith("CREATE DATABASE "):
                self.databases[line[len("CREATE DATABASE "):].rstrip(";")] = []
            elif line.startswith("\\connect "):
                current = line.split()[1]
                self.databases.setdefault(current, [])
            elif line.startswith("CREATE TABLE public."):
                table = line[len("CREATE TABLE public."):].split()[0]
                self.databases[current].append(table)

        return CommandResult(tuple(args), 0, b"", self.feed_stderr)


class TickingClock:
    """datetime.now stand-in advancing one second per call."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 2, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + timedelta(seconds=1)
        return current


async def refuse_connect(**kwargs):
    raise ConnectionRefusedError("connection refused")


def write_dump(path: Path, sql: str) -> Path:
    """Write a gzip artifact holding the given SQL."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with gzip.open(path, "wb") as f:
        f.write(sql.encode())
    return path


def tables_sql(count: int, prefix: str = "t") -> str:
    return "".join(f"CREATE TABLE public.{prefix}{i} (id integer);\n" for i in range(count))


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_pg() -> FakePostgres:
    return FakePostgres({"sales": ["orders", "customers", "invoices"]})


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def test_config(temp_dir: Path) -> PgGuardConfig:
    """Create a test configuration."""
    return PgGuardConfig(
        backup_root=temp_dir / "backups",
        log_file=None,
        require_root=False,
        readiness_attempts=3,
        readiness_interval=0.0,
        remediation_interval=0.0,
        exporter_env_path=temp_dir / "exporter" / ".env",
        exporter_unit_path=temp_dir / "systemd" / "postgres_exporter.service",
    )


@pytest_asyncio.fixture
async def runtime(test_config: PgGuardConfig, fake_pg: FakePostgres, clock: TickingClock):
    """Initialized runtime wired to FakePostgres."""
    from pgguard.core import initialize_runtime, shutdown_runtime
    from pgguard.services.credentials import CredentialManager

    state = await initialize_runtime(
        test_config,
        runner=fake_pg,
        connect=refuse_connect,
        sleep=no_sleep,
        clock=clock,
        credentials=CredentialManager(chown=lambda *args, **kwargs: None),
    )
    yield state
    await shutdown_runtime(state)
