# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pg-guard Compressor - gzip streaming for backup artifacts.

Dumps are never held in memory: they are compressed chunk by chunk on the
way to disk and decompressed chunk by chunk on the way back into psql.
Output is plain gzip so artifacts stay usable with `gunzip -c | psql`.
"""

import asyncio
import gzip
import zlib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterable, AsyncIterator

import aiofiles
import structlog

from pgguard.exceptions import BackupError

logger = structlog.get_logger()

# Thread pool for CPU-bound integrity checks
_executor = ThreadPoolExecutor(max_workers=2)

# zlib window bits selecting the gzip container
GZIP_WBITS = 16 + zlib.MAX_WBITS

DEFAULT_GZIP_LEVEL = 6
DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass
class StreamCounter:
    """Byte counts observed while compressing a stream."""

    raw_bytes: int = 0
    compressed_bytes: int = 0


async def gzip_stream(
    source: AsyncIterable[bytes],
    level: int = DEFAULT_GZIP_LEVEL,
    counter: StreamCounter | None = None,
) -> AsyncIterator[bytes]:
    """
    Compress an async byte stream into a single gzip member.

    Errors raised by the source propagate unchanged to the consumer.

    Args:
        source: Raw data chunks
        level: gzip compression level (1-9)
        counter: Optional counter updated with raw and compressed sizes

    Yields:
        Compressed chunks
    """
    compressor = zlib.compressobj(level, zlib.DEFLATED, GZIP_WBITS)

    async for chunk in source:
        if not chunk:
            continue
        if counter is not None:
            counter.raw_bytes += len(chunk)
        out = compressor.compress(chunk)
        if out:
            if counter is not None:
                counter.compressed_bytes += len(out)
            yield out

    tail = compressor.flush()
    if counter is not None:
        counter.compressed_bytes += len(tail)
    yield tail


async def gunzip_file(
    path: Path,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> AsyncIterator[bytes]:
    """
    Stream-decompress a gzip file.

    Concatenated gzip members (as produced by appending gzip outputs) are
    decompressed in order.

    Args:
        path: gzip file
        chunk_size: Read size in bytes

    Yields:
        Decompressed chunks

    Raises:
        BackupError: If the file is truncated or not gzip data
    """
    decompressor = zlib.decompressobj(GZIP_WBITS)
    in_member = False

    try:
        async with aiofiles.open(path, "rb") as f:
            while True:
                chunk = await f.read(chunk_size)
                if not chunk:
                    break

                while chunk:
                    in_member = True
                    out = decompressor.decompress(chunk)
                    if out:
                        yield out
                    if decompressor.eof:
                        # Start the next member, if any
                        chunk = decompressor.unused_data
                        decompressor = zlib.decompressobj(GZIP_WBITS)
                        in_member = False
                    else:
                        chunk = b""

        tail = decompressor.flush()
        if tail:
            yield tail
    except zlib.error as e:
        raise BackupError(
            f"Decompression failed: {e}",
            details={"path": str(path)},
        )

    if in_member:
        raise BackupError(
            "Compressed file ended before the end-of-stream marker",
            details={"path": str(path)},
        )


def check_gzip_file(path: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> bool:
    """
    Decompress a whole gzip file and discard the output.

    Equivalent of `gunzip -t`: checks headers, deflate data, CRC and length
    of every member. An empty file is not a valid artifact.

    Returns:
        True if the file is a complete, intact gzip file
    """
    try:
        if path.stat().st_size == 0:
            return False
        with gzip.open(path, "rb") as f:
            while f.read(chunk_size):
                pass
        return True
    except (OSError, EOFError, zlib.error):
        return False


async def verify_gzip_file(path: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> bool:
    """
    Run check_gzip_file() in the thread pool.

    Decompressing a multi-gigabyte dump would otherwise block the loop.
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, check_gzip_file, path, chunk_size)


def get_compression_stats(
    original_size: int,
    compressed_size: int,
) -> dict:
    """
    Calculate compression statistics.

    Args:
        original_size: Original data size in bytes
        compressed_size: Compressed data size in bytes

    Returns:
        Dict with compression statistics
    """
    if compressed_size == 0:
        return {
            "original_size": original_size,
            "compressed_size": compressed_size,
            "compression_ratio": 0,
            "space_saved_percent": 0,
        }

    ratio = original_size / compressed_size
    saved_bytes = original_size - compressed_size
    saved_percent = (saved_bytes / original_size) * 100 if original_size > 0 else 0

    return {
        "original_size": original_size,
        "compressed_size": compressed_size,
        "compression_ratio": round(ratio, 2),
        "space_saved_percent": round(saved_percent, 2),
    }
