# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Engine - Producing artifacts and restoring from them.
"""

from pgguard.backup.manager import BackupManager

from pgguard.backup.restore import (
    CONFIRMATION_LITERALS,
    RestoreOrchestrator,
    RestoreOutcome,
    RestorePhase,
    RestoreRequest,
    RestoreSession,
)

__all__ = [
    # Manager
    "BackupManager",
    # Restore
    "CONFIRMATION_LITERALS",
    "RestoreOrchestrator",
    "RestoreOutcome",
    "RestorePhase",
    "RestoreRequest",
    "RestoreSession",
]
