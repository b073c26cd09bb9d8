# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pg-guard Artifact Store - Filesystem repository of backup artifacts.

Artifacts are gzip-compressed SQL dumps named

    backup_{database}_{YYYYMMDD}_{HHMMSS}.sql.gz     (dumps/)
    cluster_backup_{YYYYMMDD}_{HHMMSS}.sql.gz        (cluster/)

Pre-restore snapshots carry an ``emergency_`` prefix and live in an
``emergency/`` subdirectory of their scope directory, so they never show
up in the regular listing.

Writes are atomic (temp file, then rename): a crash mid-write never leaves
a file that list() reports as complete.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Callable, List, NamedTuple, Tuple

import aiofiles
import structlog

from pgguard.config import (
    EMERGENCY_DIRECTORY,
    SCOPE_DIRECTORIES,
    BackupScope,
    PgGuardConfig,
    validate_database_name,
)
from pgguard.exceptions import BackupError, PgGuardError
from pgguard.vault.compressor import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_GZIP_LEVEL,
    StreamCounter,
    get_compression_stats,
    gunzip_file,
    gzip_stream,
    verify_gzip_file,
)

logger = structlog.get_logger()

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
ARTIFACT_SUFFIX = ".sql.gz"
SAFETY_PREFIX = "emergency_"

# Same-second collisions tolerated before put() gives up
MAX_NAME_ATTEMPTS = 60

SCOPE_PREFIXES = {
    BackupScope.DATABASE: "backup",
    BackupScope.CLUSTER: "cluster_backup",
}

_ARTIFACT_NAME = re.compile(
    r"^(?P<safety>emergency_)?"
    r"(?:(?P<cluster>cluster_backup)|backup_(?P<target>.+))"
    r"_(?P<stamp>\d{8}_\d{6})\.sql\.gz$"
)


class IntegrityState(str, Enum):
    """Result of the decompression self-test."""

    UNVERIFIED = "unverified"
    VALID = "valid"
    CORRUPT = "corrupt"


@dataclass(frozen=True)
class BackupArtifact:
    """One backup file plus its metadata."""

    scope: BackupScope
    target_name: str  # Empty for cluster scope
    path: Path
    created_at: datetime
    size_bytes: int
    integrity: IntegrityState = IntegrityState.UNVERIFIED
    safety: bool = False

    @property
    def filename(self) -> str:
        return self.path.name

    def to_dict(self) -> dict:
        return {
            "scope": self.scope.value,
            "target_name": self.target_name,
            "path": str(self.path),
            "created_at": self.created_at.isoformat(),
            "size_bytes": self.size_bytes,
            "integrity": self.integrity.value,
            "safety": self.safety,
        }


@dataclass
class PruneResult:
    """Result of a retention pruning pass."""

    scope: BackupScope
    deleted: List[Path] = field(default_factory=list)
    bytes_freed: int = 0
    kept: List[Path] = field(default_factory=list)

    @property
    def files_deleted(self) -> int:
        return len(self.deleted)


class ParsedName(NamedTuple):
    scope: BackupScope
    target_name: str
    created_at: datetime
    safety: bool


def artifact_filename(
    scope: BackupScope,
    target_name: str,
    created_at: datetime,
    safety: bool = False,
) -> str:
    """
    Build the file name of an artifact.

    Args:
        scope: Artifact scope
        target_name: Database name (ignored for cluster scope)
        created_at: Creation time, rendered to the second
        safety: Pre-restore snapshot

    Returns:
        File name such as ``backup_sales_20240101_020000.sql.gz``
    """
    parts = [SCOPE_PREFIXES[scope]]
    if scope == BackupScope.DATABASE:
        parts.append(target_name)
    parts.append(created_at.strftime(TIMESTAMP_FORMAT))
    name = "_".join(parts) + ARTIFACT_SUFFIX
    return SAFETY_PREFIX + name if safety else name


def parse_artifact_filename(filename: str) -> ParsedName | None:
    """
    Parse an artifact file name.

    Returns:
        ParsedName, or None if the name does not follow the convention
    """
    match = _ARTIFACT_NAME.match(filename)
    if not match:
        return None

    try:
        created_at = datetime.strptime(match.group("stamp"), TIMESTAMP_FORMAT)
    except ValueError:
        return None

    if match.group("cluster"):
        scope, target = BackupScope.CLUSTER, ""
    else:
        scope, target = BackupScope.DATABASE, match.group("target")

    return ParsedName(scope, target, created_at, bool(match.group("safety")))


class ArtifactStore:
    """
    Durable, discoverable storage of backup artifacts.

    The store never raises out of validate(); every other failure is a
    BackupError.
    """

    def __init__(
        self,
        backup_root: Path,
        *,
        compression_level: int = DEFAULT_GZIP_LEVEL,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.backup_root = backup_root
        self.compression_level = compression_level
        self.chunk_size = chunk_size
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: PgGuardConfig,
        clock: Callable[[], datetime] = datetime.now,
    ) -> "ArtifactStore":
        return cls(
            config.backup_root,
            compression_level=config.compression_level,
            chunk_size=config.chunk_size,
            clock=clock,
        )

    def directory(self, scope: BackupScope, safety: bool = False) -> Path:
        """Directory holding the artifacts of a scope."""
        directory = self.backup_root / SCOPE_DIRECTORIES[scope]
        return directory / EMERGENCY_DIRECTORY if safety else directory

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def list(
        self,
        scope: BackupScope,
        target_name: str | None = None,
        *,
        safety: bool = False,
    ) -> List[BackupArtifact]:
        """
        List complete artifacts of a scope, newest first.

        Temp files and files not following the naming convention are
        ignored. A missing directory yields an empty list.

        Args:
            scope: Scope to list
            target_name: Only artifacts of this database (database scope)
            safety: List pre-restore snapshots instead of regular artifacts

        Returns:
            Artifacts sorted by creation time, newest first
        """
        directory = self.directory(scope, safety)
        if not directory.is_dir():
            return []

        artifacts: List[BackupArtifact] = []
        for path in directory.iterdir():
            parsed = parse_artifact_filename(path.name)
            if parsed is None or parsed.scope != scope or parsed.safety != safety:
                continue
            if target_name is not None and parsed.target_name != target_name:
                continue
            try:
                if not path.is_file():
                    continue
                size = path.stat().st_size
            except OSError:
                # Removed between iterdir() and stat()
                continue

            artifacts.append(
                BackupArtifact(
                    scope=scope,
                    target_name=parsed.target_name,
                    path=path,
                    created_at=parsed.created_at,
                    size_bytes=size,
                    safety=safety,
                )
            )

        artifacts.sort(key=lambda a: (a.created_at, a.path.name), reverse=True)
        return artifacts

    async def latest(
        self,
        scope: BackupScope,
        target_name: str | None = None,
    ) -> BackupArtifact | None:
        """Newest regular artifact of a scope (and database), if any."""
        artifacts = await self.list(scope, target_name)
        return artifacts[0] if artifacts else None

    def describe(
        self,
        path: Path,
        scope: BackupScope,
        target_name: str = "",
    ) -> BackupArtifact:
        """
        Build a BackupArtifact for an arbitrary path.

        Names following the convention supply scope, database and creation
        time; for other names the given scope and target are used and the
        modification time stands in for the creation time. A missing path
        yields an artifact with size 0, so callers can report it.
        """
        parsed = parse_artifact_filename(path.name)

        try:
            stat = path.stat()
            size = stat.st_size
            mtime = datetime.fromtimestamp(stat.st_mtime)
        except OSError:
            size = 0
            mtime = self._clock()

        if parsed is not None:
            return BackupArtifact(
                scope=parsed.scope,
                target_name=parsed.target_name,
                path=path,
                created_at=parsed.created_at,
                size_bytes=size,
                safety=parsed.safety,
            )

        return BackupArtifact(
            scope=scope,
            target_name=target_name if scope == BackupScope.DATABASE else "",
            path=path,
            created_at=mtime,
            size_bytes=size,
        )

    def resolve(
        self,
        scope: BackupScope,
        name_or_path: str | Path,
        target_name: str = "",
    ) -> BackupArtifact:
        """
        Resolve an operator-supplied file argument.

        A bare file name is looked up in the scope directory; anything with
        a directory component is used as given.
        """
        path = Path(name_or_path)
        if path.parent == Path("."):
            path = self.directory(scope) / path
        return self.describe(path, scope, target_name)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    async def put(
        self,
        scope: BackupScope,
        target_name: str,
        data: AsyncIterable[bytes],
        *,
        safety: bool = False,
    ) -> BackupArtifact:
        """
        Compress a dump stream into a new artifact.

        The data is written to a hidden temp file which is renamed into
        place only after the stream ended cleanly. If the stream raises
        (for example because the dump process exited with an error) the
        temp file is removed and the error propagates.

        Args:
            scope: Artifact scope
            target_name: Database name (ignored for cluster scope)
            data: Raw dump chunks
            safety: Write a pre-restore snapshot

        Returns:
            The new artifact (integrity UNVERIFIED)

        Raises:
            BackupError: If the write fails
            PgGuardError: Whatever the stream raises, unchanged
        """
        if scope == BackupScope.CLUSTER:
            target_name = ""
        elif not validate_database_name(target_name):
            raise BackupError(
                f"Invalid database name: {target_name!r}",
                details={"scope": scope.value},
            )

        directory = self.directory(scope, safety)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackupError(
                f"Cannot create backup directory {directory}: {e}",
                details={"scope": scope.value},
            ) from e

        created_at, final_path = self._claim_name(
            directory, scope, target_name, self._clock().replace(microsecond=0), safety
        )
        temp_path = directory / f".{final_path.name}.tmp"

        counter = StreamCounter()
        try:
            async with aiofiles.open(temp_path, "wb") as f:
                async for chunk in gzip_stream(data, self.compression_level, counter):
                    await f.write(chunk)

            # Rename to final path (atomic on the same filesystem)
            temp_path.rename(final_path)

        except PgGuardError:
            raise
        except Exception as e:
            raise BackupError(
                f"Failed to write artifact: {e}",
                details={"scope": scope.value, "target_name": target_name},
            ) from e
        finally:
            if temp_path.exists():
                temp_path.unlink()

        artifact = BackupArtifact(
            scope=scope,
            target_name=target_name,
            path=final_path,
            created_at=created_at,
            size_bytes=final_path.stat().st_size,
            safety=safety,
        )

        logger.info(
            "artifact_written",
            path=str(final_path),
            scope=scope.value,
            safety=safety,
            **get_compression_stats(counter.raw_bytes, artifact.size_bytes),
        )

        return artifact

    def _claim_name(
        self,
        directory: Path,
        scope: BackupScope,
        target_name: str,
        created_at: datetime,
        safety: bool,
    ) -> Tuple[datetime, Path]:
        # Never overwrites; a name taken within the same second moves on a second
        for _ in range(MAX_NAME_ATTEMPTS):
            path = directory / artifact_filename(scope, target_name, created_at, safety)
            temp = directory / f".{path.name}.tmp"
            if not path.exists() and not temp.exists():
                return created_at, path
            logger.debug("artifact_name_taken", filename=path.name)
            created_at += timedelta(seconds=1)

        raise BackupError(
            f"No free artifact name in {directory}",
            details={"scope": scope.value, "target_name": target_name},
        )

    async def discard(self, artifact: BackupArtifact) -> None:
        """Delete one artifact (missing files are ignored)."""
        artifact.path.unlink(missing_ok=True)
        logger.info("artifact_discarded", path=str(artifact.path))

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    async def validate(self, artifact: BackupArtifact) -> IntegrityState:
        """
        Run the decompression self-test on an artifact.

        Never raises: a missing, empty, truncated or non-gzip file is
        CORRUPT. Callers branch on the returned state.
        """
        try:
            ok = await verify_gzip_file(artifact.path, self.chunk_size)
        except Exception as e:
            logger.warning("artifact_validation_error", path=str(artifact.path), error=str(e))
            ok = False

        state = IntegrityState.VALID if ok else IntegrityState.CORRUPT
        log = logger.info if ok else logger.warning
        log("artifact_validated", path=str(artifact.path), integrity=state.value)
        return state

    async def validated(self, artifact: BackupArtifact) -> BackupArtifact:
        """Return a copy of the artifact carrying its integrity state."""
        return replace(artifact, integrity=await self.validate(artifact))

    def open_stream(self, artifact: BackupArtifact) -> AsyncIterator[bytes]:
        """Stream the decompressed SQL of an artifact."""
        return gunzip_file(artifact.path, self.chunk_size)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def prune(
        self,
        scope: BackupScope,
        max_age_days: int,
        *,
        target_name: str | None = None,
        safety: bool = False,
    ) -> PruneResult:
        """
        Delete artifacts strictly older than max_age_days.

        The newest artifact of every database (database scope) or the newest
        cluster artifact is always kept, even when it is older than the
        threshold, so routine pruning never leaves zero backups. Leftover
        temp files older than the threshold are removed too.

        Args:
            scope: Scope to prune
            max_age_days: Age threshold in days (>= 0)
            target_name: Only prune artifacts of this database
            safety: Prune pre-restore snapshots instead of regular artifacts

        Returns:
            PruneResult listing deleted files
        """
        if max_age_days < 0:
            raise ValueError(f"max_age_days must be >= 0, got {max_age_days}")

        cutoff = self._clock() - timedelta(days=max_age_days)
        result = PruneResult(scope=scope)

        newest_seen: set = set()
        for artifact in await self.list(scope, target_name, safety=safety):
            # list() is newest first: the first artifact per target is kept
            if artifact.target_name not in newest_seen:
                newest_seen.add(artifact.target_name)
                result.kept.append(artifact.path)
                continue

            if artifact.created_at >= cutoff:
                result.kept.append(artifact.path)
                continue

            try:
                artifact.path.unlink()
            except OSError as e:
                logger.warning("prune_file_error", path=str(artifact.path), error=str(e))
                continue

            result.deleted.append(artifact.path)
            result.bytes_freed += artifact.size_bytes
            logger.debug(
                "backup_file_pruned",
                path=str(artifact.path),
                age_days=(self._clock() - artifact.created_at).days,
            )

        directory = self.directory(scope, safety)
        if directory.is_dir():
            for temp_file in directory.glob(".*.tmp"):
                try:
                    if datetime.fromtimestamp(temp_file.stat().st_mtime) < cutoff:
                        temp_file.unlink()
                        logger.debug("stale_temp_file_removed", path=str(temp_file))
                except OSError as e:
                    logger.warning("prune_file_error", path=str(temp_file), error=str(e))

        logger.info(
            "backup_pruning_complete",
            scope=scope.value,
            safety=safety,
            files_deleted=result.files_deleted,
            bytes_freed=result.bytes_freed,
        )

        return result

    async def stats(self, scope: BackupScope) -> dict:
        """
        Get statistics about a scope's artifacts.

        Returns:
            Dict with counts, sizes and oldest/newest creation times
        """
        artifacts = await self.list(scope)
        safety_artifacts = await self.list(scope, safety=True)

        return {
            "scope": scope.value,
            "directory": str(self.directory(scope)),
            "backup_files": len(artifacts),
            "backup_bytes": sum(a.size_bytes for a in artifacts),
            "safety_files": len(safety_artifacts),
            "safety_bytes": sum(a.size_bytes for a in safety_artifacts),
            "newest_backup": artifacts[0].created_at.isoformat() if artifacts else None,
            "oldest_backup": artifacts[-1].created_at.isoformat() if artifacts else None,
        }
