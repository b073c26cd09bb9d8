# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pg-guard Journal - Append-only SQLite record of operations.

The journal answers "what happened here?" after an unattended run:
which artifacts were written, which restores ran against which artifact,
how each ended, and what the service verifier did. Rows are only ever
inserted, except that a restore row is completed once when the session
reaches a terminal state.
"""

import json
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Awaitable, Callable, List, TypedDict

import aiosqlite
import structlog

from pgguard.exceptions import JournalError

logger = structlog.get_logger()


class ArtifactRecord(TypedDict):
    """Record of a written artifact."""

    id: int
    scope: str
    target_name: str
    path: str
    size_bytes: int
    safety: bool
    recorded_at: str  # ISO 8601


class RestoreRecord(TypedDict):
    """Record of a restore session."""

    id: str  # ULID
    scope: str
    target_name: str
    artifact_path: str
    safety_artifact_path: str | None
    services: List[str]
    started_at: str
    completed_at: str | None
    phase: str | None
    outcome: str | None
    postcondition: dict
    warnings: List[str]
    error: str | None


async def init_journal_db(db_path: Path) -> None:
    """
    Initialize the journal schema.

    Creates tables if they don't exist. This is idempotent.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS artifacts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    scope TEXT NOT NULL,
                    target_name TEXT NOT NULL,
                    path TEXT NOT NULL,
                    size_bytes INTEGER NOT NULL,
                    safety INTEGER NOT NULL,
                    recorded_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS restores (
                    id TEXT PRIMARY KEY,
                    scope TEXT NOT NULL,
                    target_name TEXT NOT NULL,
                    artifact_path TEXT NOT NULL,
                    safety_artifact_path TEXT,
                    services TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    phase TEXT,
                    outcome TEXT,
                    postcondition TEXT,
                    warnings TEXT,
                    error TEXT
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS verifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    service TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    cycles INTEGER NOT NULL,
                    actions TEXT NOT NULL,
                    recorded_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_restores_started_at
                ON restores(started_at)
            """)

            await db.commit()

        logger.debug("journal_db_initialized", db_path=str(db_path))

    except Exception as e:
        raise JournalError(
            f"Failed to initialize journal database: {e}",
            details={"db_path": str(db_path)},
        )


async def record_artifact(
    db: aiosqlite.Connection,
    scope: str,
    target_name: str,
    path: str,
    size_bytes: int,
    safety: bool = False,
) -> int:
    """
    Record a written artifact.

    Returns:
        Artifact record ID
    """
    now = datetime.now(UTC).isoformat()

    cursor = await db.execute(
        """
        INSERT INTO artifacts (scope, target_name, path, size_bytes, safety, recorded_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (scope, target_name, path, size_bytes, int(safety), now),
    )
    await db.commit()

    return cursor.lastrowid


async def record_restore_started(
    db: aiosqlite.Connection,
    session_id: str,
    scope: str,
    target_name: str,
    artifact_path: str,
    services: List[str],
) -> None:
    """
    Record the start of a restore session.

    Args:
        db: SQLite database connection
        session_id: Unique session ID (ULID)
        scope: 'database' or 'cluster'
        target_name: Database name (empty for cluster scope)
        artifact_path: Artifact being applied
        services: Services that will be paused
    """
    now = datetime.now(UTC).isoformat()

    await db.execute(
        """
        INSERT INTO restores (id, scope, target_name, artifact_path, services, started_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (session_id, scope, target_name, artifact_path, json.dumps(services), now),
    )
    await db.commit()

    logger.debug("restore_recorded", session_id=session_id, scope=scope)


async def complete_restore(
    db: aiosqlite.Connection,
    session_id: str,
    *,
    phase: str,
    outcome: str,
    safety_artifact_path: str | None = None,
    postcondition: dict | None = None,
    warnings: List[str] | None = None,
    error: str | None = None,
) -> None:
    """
    Mark a restore session as finished.

    Args:
        db: SQLite database connection
        session_id: Session ID
        phase: Last phase reached
        outcome: Terminal outcome
        safety_artifact_path: Pre-restore snapshot, if one was kept
        postcondition: Counts reported after the restore
        warnings: Warnings collected during the session
        error: Error message if the session did not succeed
    """
    now = datetime.now(UTC).isoformat()

    await db.execute(
        """
        UPDATE restores
        SET completed_at = ?, phase = ?, outcome = ?, safety_artifact_path = ?,
            postcondition = ?, warnings = ?, error = ?
        WHERE id = ?
        """,
        (
            now,
            phase,
            outcome,
            safety_artifact_path,
            json.dumps(postcondition or {}),
            json.dumps(warnings or []),
            error,
            session_id,
        ),
    )
    await db.commit()


def _row_to_restore(row) -> RestoreRecord:
    return RestoreRecord(
        id=row[0],
        scope=row[1],
        target_name=row[2],
        artifact_path=row[3],
        safety_artifact_path=row[4],
        services=json.loads(row[5]),
        started_at=row[6],
        completed_at=row[7],
        phase=row[8],
        outcome=row[9],
        postcondition=json.loads(row[10]) if row[10] else {},
        warnings=json.loads(row[11]) if row[11] else [],
        error=row[12],
    )


_RESTORE_COLUMNS = """
    id, scope, target_name, artifact_path, safety_artifact_path, services,
    started_at, completed_at, phase, outcome, postcondition, warnings, error
"""


async def get_restore(
    db: aiosqlite.Connection,
    session_id: str,
) -> RestoreRecord | None:
    """Get one restore session by ID."""
    async with db.execute(
        f"SELECT {_RESTORE_COLUMNS} FROM restores WHERE id = ?",
        (session_id,),
    ) as cursor:
        row = await cursor.fetchone()

    return _row_to_restore(row) if row else None


async def list_restores(
    db: aiosqlite.Connection,
    limit: int = 50,
    scope: str | None = None,
) -> List[RestoreRecord]:
    """
    List restore sessions, most recent first.

    Args:
        db: SQLite database connection
        limit: Maximum number of records to return
        scope: Optional filter by scope

    Returns:
        List of restore records
    """
    query = f"SELECT {_RESTORE_COLUMNS} FROM restores"
    params: List = []

    if scope:
        query += " WHERE scope = ?"
        params.append(scope)

    query += " ORDER BY started_at DESC LIMIT ?"
    params.append(limit)

    async with db.execute(query, params) as cursor:
        return [_row_to_restore(row) async for row in cursor]


async def list_artifacts(
    db: aiosqlite.Connection,
    limit: int = 50,
) -> List[ArtifactRecord]:
    """List recorded artifacts, most recent first."""
    records: List[ArtifactRecord] = []

    async with db.execute(
        """
        SELECT id, scope, target_name, path, size_bytes, safety, recorded_at
        FROM artifacts ORDER BY id DESC LIMIT ?
        """,
        (limit,),
    ) as cursor:
        async for row in cursor:
            records.append(
                ArtifactRecord(
                    id=row[0],
                    scope=row[1],
                    target_name=row[2],
                    path=row[3],
                    size_bytes=row[4],
                    safety=bool(row[5]),
                    recorded_at=row[6],
                )
            )

    return records


async def record_verification(
    db: aiosqlite.Connection,
    service: str,
    outcome: str,
    cycles: int,
    actions: List[dict],
) -> int:
    """
    Record one Service Health Verifier run.

    Returns:
        Verification record ID
    """
    now = datetime.now(UTC).isoformat()

    cursor = await db.execute(
        """
        INSERT INTO verifications (service, outcome, cycles, actions, recorded_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (service, outcome, cycles, json.dumps(actions), now),
    )
    await db.commit()

    return cursor.lastrowid


async def get_journal_stats(db: aiosqlite.Connection) -> dict:
    """
    Get journal statistics.

    Returns:
        Dict with journal statistics
    """
    stats = {}

    async with db.execute("SELECT COUNT(*), SUM(size_bytes) FROM artifacts") as cursor:
        row = await cursor.fetchone()
        stats["total_artifacts"] = row[0] if row else 0
        stats["total_artifact_bytes"] = (row[1] or 0) if row else 0

    async with db.execute(
        "SELECT outcome, COUNT(*) FROM restores GROUP BY outcome"
    ) as cursor:
        stats["restores_by_outcome"] = {row[0]: row[1] async for row in cursor}

    async with db.execute(
        "SELECT outcome, COUNT(*) FROM verifications GROUP BY outcome"
    ) as cursor:
        stats["verifications_by_outcome"] = {row[0]: row[1] async for row in cursor}

    return stats


async def write_journal(
    db_path: Path | None,
    write: Callable[..., Awaitable[Any]],
    *args: Any,
    **kwargs: Any,
) -> None:
    """
    Run one journal write on a fresh connection.

    The journal is an audit aid: a failing write is logged and never
    interrupts the backup or restore that produced it. A db_path of None
    means journaling is disabled.
    """
    if db_path is None:
        return

    try:
        async with aiosqlite.connect(db_path) as db:
            await write(db, *args, **kwargs)
    except Exception as e:
        logger.warning(
            "journal_write_failed",
            db_path=str(db_path),
            operation=getattr(write, "__name__", str(write)),
            error=str(e),
        )
