# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Artifact vault - Backup artifact storage and the operation journal.
"""

from pgguard.vault.store import (
    ArtifactStore,
    BackupArtifact,
    IntegrityState,
    PruneResult,
    artifact_filename,
    parse_artifact_filename,
)

from pgguard.vault.journal import (
    init_journal_db,
    record_artifact,
    record_restore_started,
    complete_restore,
    get_restore,
    list_restores,
    record_verification,
    write_journal,
    RestoreRecord,
)

__all__ = [
    # Store
    "ArtifactStore",
    "BackupArtifact",
    "IntegrityState",
    "PruneResult",
    "artifact_filename",
    "parse_artifact_filename",
    # Journal
    "init_journal_db",
    "record_artifact",
    "record_restore_started",
    "complete_restore",
    "get_restore",
    "list_restores",
    "record_verification",
    "write_journal",
    "RestoreRecord",
]
