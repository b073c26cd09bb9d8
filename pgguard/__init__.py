# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pg-guard - PostgreSQL backup/restore orchestration and self-healing checks.

Takes compressed logical backups of single databases or whole clusters,
restores them through a guarded state machine (integrity check, safety
snapshot, typed confirmation, service pause, replace, postcondition), and
verifies that dependent services such as the metrics exporter reconnect
after configuration changes. Package name: pgguard.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from pgguard.builder import create_config
from pgguard.config import BackupScope, PgGuardConfig

# Core functions
from pgguard.core import (
    Runtime,
    initialize_runtime,
    run_post_change_verification,
    shutdown_runtime,
)

# Environment-based configuration and profiles (additional helpers)
from pgguard.env import (
    create_config_from_env,
    safe_defaults,
    unattended,
    local_development,
)

__all__ = [
    # Version
    "__version__",
    # Configuration creation (primary user-facing APIs)
    "create_config",
    "create_config_from_env",
    "BackupScope",
    "PgGuardConfig",
    # Core orchestration functions
    "Runtime",
    "initialize_runtime",
    "run_post_change_verification",
    "shutdown_runtime",
]
