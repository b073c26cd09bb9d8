# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Dependent services - systemd control, credentials and health verification.
"""

from pgguard.services.systemd import SystemdController

from pgguard.services.credentials import (
    CredentialManager,
    ServiceAccount,
    exporter_account,
)

from pgguard.services.health import (
    ManagedService,
    RemediationAction,
    ServiceHealthVerifier,
    ServiceSignal,
    VerificationOutcome,
    VerificationResult,
    wait_for_database,
)

from pgguard.services.exporter import PostgresExporterService

__all__ = [
    "SystemdController",
    # Credentials
    "CredentialManager",
    "ServiceAccount",
    "exporter_account",
    # Health
    "ManagedService",
    "RemediationAction",
    "ServiceHealthVerifier",
    "ServiceSignal",
    "VerificationOutcome",
    "VerificationResult",
    "wait_for_database",
    # Exporter
    "PostgresExporterService",
]
