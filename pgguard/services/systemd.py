# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
systemd service control.

Thin wrapper over systemctl through a CommandRunner, plus bounded polling
for a unit to become active.
"""

import asyncio
from typing import Awaitable, Callable

import structlog

from pgguard.exceptions import CommandError, ServiceError
from pgguard.postgres.commands import CommandRunner

logger = structlog.get_logger()

SYSTEMCTL_TIMEOUT = 60.0


class SystemdController:
    """Start, stop and query systemd units."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._runner = runner
        self._sleep = sleep

    async def _systemctl(self, *args: str) -> None:
        try:
            result = await self._runner.run(["systemctl", *args], timeout=SYSTEMCTL_TIMEOUT)
            result.check()
        except CommandError as e:
            raise ServiceError(
                f"systemctl {' '.join(args)} failed",
                details={"stderr": e.details.get("stderr", str(e))},
            ) from e

    async def is_active(self, name: str) -> bool:
        result = await self._runner.run(
            ["systemctl", "is-active", "--quiet", name],
            timeout=SYSTEMCTL_TIMEOUT,
        )
        return result.ok

    async def start(self, name: str) -> None:
        await self._systemctl("start", name)
        logger.info("service_started", service=name)

    async def stop(self, name: str) -> None:
        await self._systemctl("stop", name)
        logger.info("service_stopped", service=name)

    async def restart(self, name: str) -> None:
        await self._systemctl("restart", name)
        logger.info("service_restarted", service=name)

    async def daemon_reload(self) -> None:
        await self._systemctl("daemon-reload")

    async def wait_until_active(
        self,
        name: str,
        attempts: int = 10,
        interval: float = 1.0,
    ) -> bool:
        """
        Poll until a unit reports active.

        Returns:
            True if the unit became active within the attempt ceiling
        """
        for attempt in range(1, attempts + 1):
            if await self.is_active(name):
                return True
            if attempt < attempts:
                await self._sleep(interval)

        logger.warning("service_not_active", service=name, attempts=attempts)
        return False
