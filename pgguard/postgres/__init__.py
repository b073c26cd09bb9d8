# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
PostgreSQL access - Client tool invocation and connectivity probing.
"""

from pgguard.postgres.commands import (
    CommandResult,
    CommandRunner,
    SubprocessRunner,
    pg_command,
)

from pgguard.postgres.probe import (
    ConnectionStrategy,
    ConnectivityProber,
    Credentials,
    DatabaseEndpoint,
    ProbeResult,
    Transport,
    admin_credentials,
    admin_endpoint,
    admin_strategies,
)

__all__ = [
    # Commands
    "CommandResult",
    "CommandRunner",
    "SubprocessRunner",
    "pg_command",
    # Probe
    "ConnectionStrategy",
    "ConnectivityProber",
    "Credentials",
    "DatabaseEndpoint",
    "ProbeResult",
    "Transport",
    "admin_credentials",
    "admin_endpoint",
    "admin_strategies",
]
