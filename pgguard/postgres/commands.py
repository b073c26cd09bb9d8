# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pg-guard Commands - Running PostgreSQL client tools and system commands.

Every external program (pg_dump, pg_dumpall, psql, dropdb, createdb,
systemctl) goes through a CommandRunner. Dumps are streamed out of the
child's stdout and restores are streamed into its stdin, so nothing is
ever buffered whole in memory.
"""

import asyncio
import os
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Mapping, Protocol, Sequence, Tuple

import structlog

from pgguard.exceptions import CommandError

logger = structlog.get_logger()

DEFAULT_CHUNK_SIZE = 64 * 1024

# Appended to the message of a failed command
_STDERR_TAIL = 2000


@dataclass(frozen=True)
class CommandResult:
    """Exit status and captured output of one command."""

    argv: Tuple[str, ...]
    returncode: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    def check(self) -> "CommandResult":
        """Raise CommandError unless the command exited with status 0."""
        if not self.ok:
            raise command_error(self.argv, self.returncode, self.stderr)
        return self


def command_error(argv: Sequence[str], returncode: int, stderr: bytes) -> CommandError:
    text = stderr.decode("utf-8", errors="replace").strip()
    return CommandError(
        f"{os.path.basename(argv[0]) if argv else 'command'} exited with status {returncode}",
        details={
            "argv": list(argv),
            "returncode": returncode,
            "stderr": text[-_STDERR_TAIL:],
        },
    )


class CommandRunner(Protocol):
    """How pg-guard executes external programs."""

    async def run(
        self,
        argv: Sequence[str],
        *,
        input: bytes | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a command to completion and capture its output."""
        ...

    def stream(self, argv: Sequence[str]) -> AsyncIterator[bytes]:
        """
        Yield the stdout of a command chunk by chunk.

        Raises CommandError after the last chunk if the command failed.
        """
        ...

    async def feed(self, argv: Sequence[str], source: AsyncIterable[bytes]) -> CommandResult:
        """Pipe a byte stream into the stdin of a command."""
        ...


def pg_command(run_as: str | None, program: str, *args: str) -> list:
    """
    Build the argv of a PostgreSQL client tool.

    Args:
        run_as: OS account to run as via sudo (None runs directly)
        program: Client program, e.g. 'psql'
        *args: Program arguments

    Returns:
        argv list, e.g. ['sudo', '-u', 'postgres', 'psql', ...]
    """
    prefix = ["sudo", "-n", "-u", run_as] if run_as else []
    return prefix + [program, *args]


class SubprocessRunner:
    """CommandRunner backed by asyncio subprocesses."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.chunk_size = chunk_size

    async def run(
        self,
        argv: Sequence[str],
        *,
        input: bytes | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        process_env = {**os.environ, **env} if env else None

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=process_env,
            )
        except OSError as e:
            raise CommandError(
                f"Failed to start {argv[0]}: {e}",
                details={"argv": list(argv)},
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(input), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CommandError(
                f"{argv[0]} timed out after {timeout}s",
                details={"argv": list(argv)},
            )

        logger.debug("command_finished", argv=list(argv), returncode=proc.returncode)
        return CommandResult(tuple(argv), proc.returncode, stdout, stderr)

    async def stream(self, argv: Sequence[str]) -> AsyncIterator[bytes]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CommandError(
                f"Failed to start {argv[0]}: {e}",
                details={"argv": list(argv)},
            ) from e

        # Drain stderr concurrently so a chatty child never blocks on it
        stderr_task = asyncio.ensure_future(proc.stderr.read())
        try:
            while True:
                chunk = await proc.stdout.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk

            returncode = await proc.wait()
            stderr = await stderr_task
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            if not stderr_task.done():
                stderr_task.cancel()

        logger.debug("command_finished", argv=list(argv), returncode=returncode)
        if returncode != 0:
            raise command_error(argv, returncode, stderr)

    async def feed(self, argv: Sequence[str], source: AsyncIterable[bytes]) -> CommandResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CommandError(
                f"Failed to start {argv[0]}: {e}",
                details={"argv": list(argv)},
            ) from e

        stderr_task = asyncio.ensure_future(proc.stderr.read())
        try:
            async for chunk in source:
                proc.stdin.write(chunk)
                await proc.stdin.drain()
            proc.stdin.close()
            await proc.stdin.wait_closed()
            returncode = await proc.wait()
            stderr = await stderr_task
        except (BrokenPipeError, ConnectionResetError):
            # Child exited early; its status and stderr tell why
            returncode = await proc.wait()
            stderr = await stderr_task
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            if not stderr_task.done():
                stderr_task.cancel()

        logger.debug("command_finished", argv=list(argv), returncode=returncode)
        return CommandResult(tuple(argv), returncode, b"", stderr)
