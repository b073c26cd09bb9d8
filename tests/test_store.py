# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Artifact Store tests: naming, atomic writes, integrity and retention.
"""

from datetime import datetime, timedelta
from pathlib import Path

import pytest

from pgguard.config import BackupScope
from pgguard.exceptions import BackupError, CommandError
from pgguard.vault.compressor import check_gzip_file, gunzip_file, gzip_stream
from pgguard.vault.store import (
    ArtifactStore,
    IntegrityState,
    artifact_filename,
    parse_artifact_filename,
)

from conftest import TickingClock, tables_sql, write_dump


async def chunks(*parts: bytes):
    for part in parts:
        yield part


async def failing_stream():
    yield b"CREATE TABLE public.partial (id integer);\n"
    raise CommandError("pg_dump exited with status 1")


async def collect(stream) -> bytes:
    return b"".join([chunk async for chunk in stream])


# ============================================================================
# Naming
# ============================================================================

def test_artifact_filenames_follow_the_convention():
    stamp = datetime(2024, 1, 1, 2, 0, 0)

    assert artifact_filename(BackupScope.DATABASE, "sales", stamp) == (
        "backup_sales_20240101_020000.sql.gz"
    )
    assert artifact_filename(BackupScope.CLUSTER, "ignored", stamp) == (
        "cluster_backup_20240101_020000.sql.gz"
    )
    assert artifact_filename(BackupScope.DATABASE, "sales", stamp, safety=True) == (
        "emergency_backup_sales_20240101_020000.sql.gz"
    )


def test_parse_artifact_filename_handles_underscored_database_names():
    parsed = parse_artifact_filename("backup_my_app_db_20240315_231500.sql.gz")

    assert parsed is not None
    assert parsed.scope == BackupScope.DATABASE
    assert parsed.target_name == "my_app_db"
    assert parsed.created_at == datetime(2024, 3, 15, 23, 15, 0)
    assert parsed.safety is False


def test_parse_artifact_filename_rejects_foreign_names():
    assert parse_artifact_filename("notes.txt") is None
    assert parse_artifact_filename("backup_sales.sql.gz") is None
    assert parse_artifact_filename(".backup_sales_20240101_020000.sql.gz.tmp") is None


# ============================================================================
# Compression
# ============================================================================

@pytest.mark.asyncio
async def test_gzip_stream_output_decompresses_to_the_input(temp_dir: Path):
    path = temp_dir / "dump.sql.gz"
    data = tables_sql(50).encode()

    path.write_bytes(b"".join([c async for c in gzip_stream(chunks(data[:100], data[100:]))]))

    assert check_gzip_file(path)
    assert await collect(gunzip_file(path, chunk_size=16)) == data


@pytest.mark.asyncio
async def test_gunzip_file_reads_concatenated_members(temp_dir: Path):
    import gzip

    path = temp_dir / "multi.sql.gz"
    path.write_bytes(gzip.compress(b"first\n") + gzip.compress(b"second\n"))

    assert await collect(gunzip_file(path)) == b"first\nsecond\n"


@pytest.mark.asyncio
async def test_gunzip_file_raises_on_truncated_data(temp_dir: Path):
    path = write_dump(temp_dir / "dump.sql.gz", tables_sql(200))
    path.write_bytes(path.read_bytes()[:-20])

    with pytest.raises(BackupError):
        await collect(gunzip_file(path))


def test_check_gzip_file_rejects_empty_and_plain_files(temp_dir: Path):
    empty = temp_dir / "empty.sql.gz"
    empty.write_bytes(b"")
    plain = temp_dir / "plain.sql.gz"
    plain.write_text("CREATE TABLE x (id integer);")

    assert not check_gzip_file(empty)
    assert not check_gzip_file(plain)
    assert not check_gzip_file(temp_dir / "missing.sql.gz")


# ============================================================================
# Writing and listing
# ============================================================================

@pytest.mark.asyncio
async def test_put_writes_a_valid_artifact(temp_dir: Path):
    store = ArtifactStore(temp_dir, clock=TickingClock())

    artifact = await store.put(BackupScope.DATABASE, "sales", chunks(tables_sql(3).encode()))

    assert artifact.path == temp_dir / "dumps" / "backup_sales_20240101_020000.sql.gz"
    assert artifact.size_bytes == artifact.path.stat().st_size
    assert await store.validate(artifact) == IntegrityState.VALID
    assert await collect(store.open_stream(artifact)) == tables_sql(3).encode()


@pytest.mark.asyncio
async def test_put_leaves_nothing_behind_when_the_stream_fails(temp_dir: Path):
    """
    CRITICAL: A dump that fails mid-stream must not leave a file that
    list() would report as a complete artifact.
    """
    store = ArtifactStore(temp_dir, clock=TickingClock())

    with pytest.raises(CommandError):
        await store.put(BackupScope.DATABASE, "sales", failing_stream())

    assert await store.list(BackupScope.DATABASE) == []
    assert list((temp_dir / "dumps").iterdir()) == []


@pytest.mark.asyncio
async def test_put_within_the_same_second_never_overwrites(temp_dir: Path):
    """
    CRITICAL: Two backups of one database in the same second both survive;
    the second takes the next free second.
    """
    stamp = datetime(2024, 1, 1, 2, 0, 0)
    store = ArtifactStore(temp_dir, clock=lambda: stamp)

    first = await store.put(BackupScope.DATABASE, "sales", chunks(tables_sql(3).encode()))
    second = await store.put(BackupScope.DATABASE, "sales", chunks(tables_sql(5).encode()))

    assert first.filename == "backup_sales_20240101_020000.sql.gz"
    assert second.filename == "backup_sales_20240101_020001.sql.gz"
    assert second.created_at == stamp + timedelta(seconds=1)
    assert await collect(store.open_stream(first)) == tables_sql(3).encode()
    assert [a.filename for a in await store.list(BackupScope.DATABASE)] == [
        second.filename,
        first.filename,
    ]


@pytest.mark.asyncio
async def test_put_rejects_invalid_database_names(temp_dir: Path):
    store = ArtifactStore(temp_dir)

    with pytest.raises(BackupError):
        await store.put(BackupScope.DATABASE, "../etc", chunks(b"x"))


@pytest.mark.asyncio
async def test_safety_artifacts_are_listed_separately(temp_dir: Path):
    store = ArtifactStore(temp_dir, clock=TickingClock())

    regular = await store.put(BackupScope.DATABASE, "sales", chunks(b"a"))
    safety = await store.put(BackupScope.DATABASE, "sales", chunks(b"b"), safety=True)

    assert safety.path.parent == temp_dir / "dumps" / "emergency"
    assert safety.filename.startswith("emergency_")
    assert [a.path for a in await store.list(BackupScope.DATABASE)] == [regular.path]
    assert [a.path for a in await store.list(BackupScope.DATABASE, safety=True)] == [safety.path]


@pytest.mark.asyncio
async def test_list_is_newest_first_and_filters_by_database(temp_dir: Path):
    dumps = temp_dir / "dumps"
    write_dump(dumps / "backup_sales_20240101_020000.sql.gz", "a")
    write_dump(dumps / "backup_sales_20240103_020000.sql.gz", "b")
    write_dump(dumps / "backup_crm_20240102_020000.sql.gz", "c")
    write_dump(dumps / ".backup_sales_20240104_020000.sql.gz.tmp", "partial")
    (dumps / "README").write_text("not an artifact")

    store = ArtifactStore(temp_dir)

    names = [a.filename for a in await store.list(BackupScope.DATABASE)]
    assert names == [
        "backup_sales_20240103_020000.sql.gz",
        "backup_crm_20240102_020000.sql.gz",
        "backup_sales_20240101_020000.sql.gz",
    ]

    latest = await store.latest(BackupScope.DATABASE, "sales")
    assert latest is not None
    assert latest.filename == "backup_sales_20240103_020000.sql.gz"
    assert await store.latest(BackupScope.DATABASE, "missing") is None


@pytest.mark.asyncio
async def test_list_of_a_missing_directory_is_empty(temp_dir: Path):
    store = ArtifactStore(temp_dir / "nowhere")

    assert await store.list(BackupScope.CLUSTER) == []


def test_resolve_joins_bare_names_with_the_scope_directory(temp_dir: Path):
    store = ArtifactStore(temp_dir)

    artifact = store.resolve(BackupScope.DATABASE, "backup_sales_20240101_020000.sql.gz")

    assert artifact.path == temp_dir / "dumps" / "backup_sales_20240101_020000.sql.gz"
    assert artifact.target_name == "sales"
    assert artifact.size_bytes == 0

    elsewhere = store.resolve(BackupScope.CLUSTER, temp_dir / "other" / "dump.sql.gz")
    assert elsewhere.path == temp_dir / "other" / "dump.sql.gz"
    assert elsewhere.scope == BackupScope.CLUSTER


@pytest.mark.asyncio
async def test_validate_reports_corrupt_artifacts(temp_dir: Path):
    store = ArtifactStore(temp_dir)
    path = temp_dir / "dumps" / "backup_sales_20240101_020000.sql.gz"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"\x1f\x8b garbage")

    artifact = store.describe(path, BackupScope.DATABASE)

    assert await store.validate(artifact) == IntegrityState.CORRUPT
    assert (await store.validated(artifact)).integrity == IntegrityState.CORRUPT


# ============================================================================
# Retention
# ============================================================================

@pytest.mark.asyncio
@pytest.mark.parametrize("max_age_days", [0, 1, 7, 365])
async def test_prune_never_deletes_the_newest_artifact(temp_dir: Path, max_age_days: int):
    """
    CRITICAL: However aggressive the threshold, the newest artifact of a
    database survives pruning.
    """
    dumps = temp_dir / "dumps"
    for day in (1, 2, 3):
        write_dump(dumps / f"backup_sales_2023010{day}_020000.sql.gz", "x")
    write_dump(dumps / "backup_crm_20230101_020000.sql.gz", "x")

    store = ArtifactStore(temp_dir, clock=lambda: datetime(2024, 6, 1))
    result = await store.prune(BackupScope.DATABASE, max_age_days)

    remaining = {a.filename for a in await store.list(BackupScope.DATABASE)}
    assert "backup_sales_20230103_020000.sql.gz" in remaining
    assert "backup_crm_20230101_020000.sql.gz" in remaining
    assert result.files_deleted == 2


@pytest.mark.asyncio
async def test_prune_keeps_artifacts_inside_the_window(temp_dir: Path):
    now = datetime(2024, 1, 10, 12, 0, 0)
    dumps = temp_dir / "dumps"
    for days_ago in (1, 5, 8, 20):
        stamp = (now - timedelta(days=days_ago)).strftime("%Y%m%d_%H%M%S")
        write_dump(dumps / f"backup_sales_{stamp}.sql.gz", "x")

    store = ArtifactStore(temp_dir, clock=lambda: now)
    result = await store.prune(BackupScope.DATABASE, 7, target_name="sales")

    assert result.files_deleted == 2
    assert len(await store.list(BackupScope.DATABASE, "sales")) == 2


@pytest.mark.asyncio
async def test_prune_rejects_negative_thresholds(temp_dir: Path):
    store = ArtifactStore(temp_dir)

    with pytest.raises(ValueError):
        await store.prune(BackupScope.CLUSTER, -1)


@pytest.mark.asyncio
async def test_stats_counts_regular_and_safety_artifacts(temp_dir: Path):
    store = ArtifactStore(temp_dir, clock=TickingClock())
    await store.put(BackupScope.CLUSTER, "", chunks(b"one"))
    await store.put(BackupScope.CLUSTER, "", chunks(b"two"))
    await store.put(BackupScope.CLUSTER, "", chunks(b"three"), safety=True)

    stats = await store.stats(BackupScope.CLUSTER)

    assert stats["backup_files"] == 2
    assert stats["safety_files"] == 1
    assert stats["newest_backup"] == "2024-01-01T02:00:01"
