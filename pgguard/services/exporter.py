# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
postgres_exporter as a ManagedService.

Health comes from the exporter's own metrics page: `pg_up 1` means it is
connected to PostgreSQL, `pg_up 0` means it runs but cannot connect. The
connection string lives in the systemd unit as DATA_SOURCE_NAME, so
rewriting the connection means rewriting the unit, reloading systemd and
restarting the service.
"""

import os
import re
from pathlib import Path
from typing import Tuple

import aiofiles
import httpx
import structlog

from pgguard.config import PgGuardConfig
from pgguard.exceptions import ServiceError
from pgguard.postgres.probe import ConnectionStrategy, Credentials, DatabaseEndpoint
from pgguard.postgres.sql import mask_password
from pgguard.services.credentials import ServiceAccount, exporter_account
from pgguard.services.health import ServiceSignal
from pgguard.services.systemd import SystemdController

logger = structlog.get_logger()

_PG_UP = re.compile(r"^pg_up(?:\{[^}]*\})?\s+([0-9.eE+-]+)\s*$", re.MULTILINE)

UNIT_TEMPLATE = """[Unit]
Description=Prometheus PostgreSQL Exporter
After=network.target {postgres_service}.service
Wants={postgres_service}.service

[Service]
Type=simple
Restart=always
RestartSec=5
User={os_user}
Group={os_user}
Environment="DATA_SOURCE_NAME={dsn}"
ExecStart={binary} --web.listen-address={listen_address} --log.level=info
StandardOutput=journal
StandardError=journal
SyslogIdentifier={name}

[Install]
WantedBy=multi-user.target
"""


def parse_pg_up(metrics: str) -> float | None:
    """Value of the pg_up gauge, or None if the page has none."""
    match = _PG_UP.search(metrics)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def systemd_escape(value: str) -> str:
    """Escape a value for an Environment= line (% is a specifier in units)."""
    return value.replace("%", "%%").replace("\\", "\\\\").replace('"', '\\"')


def exporter_strategies(config: PgGuardConfig) -> Tuple[ConnectionStrategy, ...]:
    """
    Connection strategies for the exporter, in preference order.

    The configured one comes first, followed by the alternates tried when
    the exporter reports pg_up 0.
    """
    return (
        ConnectionStrategy("configured", "localhost", config.port, config.exporter_sslmode),
        ConnectionStrategy("localhost_no_ssl", "localhost", config.port, "disable"),
        ConnectionStrategy("localhost_ssl_prefer", "localhost", config.port, "prefer"),
        ConnectionStrategy("loopback_ip_no_ssl", "127.0.0.1", config.port, "disable"),
        ConnectionStrategy("unix_socket", str(config.socket_dir), config.port, "disable"),
    )


class PostgresExporterService:
    """
    The Prometheus postgres_exporter managed through systemd.

    Args:
        config: Immutable configuration
        systemd: Service controller
        transport: Optional httpx transport (tests use httpx.MockTransport)
        listen_address: Exporter listen address written to the unit
    """

    def __init__(
        self,
        config: PgGuardConfig,
        systemd: SystemdController,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        listen_address: str = "0.0.0.0:9187",
    ):
        self.name = config.exporter_service
        self.account: ServiceAccount = exporter_account(config)
        self.target = DatabaseEndpoint(
            database=self.account.database,
            probe_strategies=exporter_strategies(config),
            name=config.exporter_service,
        )
        self.metrics_url = config.exporter_metrics_url
        self.unit_path: Path = config.exporter_unit_path
        self._config = config
        self._systemd = systemd
        self._transport = transport
        self._listen_address = listen_address
        self._timeout = config.connect_timeout * 2

    async def signal(self) -> ServiceSignal:
        if not await self._systemd.is_active(self.name):
            return ServiceSignal.NOT_RUNNING

        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self._timeout,
            ) as client:
                response = await client.get(self.metrics_url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.debug("metrics_unavailable", service=self.name, error=str(e))
            return ServiceSignal.UNRESPONSIVE

        pg_up = parse_pg_up(response.text)
        if pg_up is None:
            logger.warning("pg_up_missing", service=self.name, url=self.metrics_url)
            return ServiceSignal.NOT_CONNECTED

        return ServiceSignal.CONNECTED if pg_up >= 1 else ServiceSignal.NOT_CONNECTED

    async def start(self) -> None:
        await self._systemd.start(self.name)
        if not await self._systemd.wait_until_active(self.name):
            raise ServiceError(f"{self.name} did not become active after start")

    async def restart(self) -> None:
        await self._systemd.restart(self.name)

    def render_unit(self, dsn: str) -> str:
        return UNIT_TEMPLATE.format(
            postgres_service=self._config.postgres_service,
            os_user=self._config.exporter_os_user,
            dsn=systemd_escape(dsn),
            binary=self._config.exporter_binary,
            listen_address=self._listen_address,
            name=self.name,
        )

    async def apply_connection(
        self,
        strategy: ConnectionStrategy,
        credentials: Credentials,
    ) -> None:
        """Rewrite DATA_SOURCE_NAME in the unit, reload systemd and restart."""
        dsn = strategy.dsn(credentials, self.target.database)
        temp_path = self.unit_path.with_name(f".{self.unit_path.name}.tmp")

        try:
            self.unit_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_path, "w") as f:
                await f.write(self.render_unit(dsn))
            # The unit embeds a password
            os.chmod(temp_path, 0o600)
            temp_path.rename(self.unit_path)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise ServiceError(
                f"Cannot write unit file: {e}",
                details={"path": str(self.unit_path)},
            ) from e

        logger.info(
            "exporter_connection_rewritten",
            service=self.name,
            strategy=strategy.name,
            dsn=mask_password(dsn),
        )

        await self._systemd.daemon_reload()
        await self._systemd.restart(self.name)
