# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackupman Compressor - Compress produced artifacts in place.

gzip (level 9) is the default codec; zstd is available for large dumps.
Compression streams in chunks on a worker thread so multi-gigabyte dumps
never have to fit in memory and the event loop stays responsive.
"""

import asyncio
import gzip
import shutil
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import structlog
import zstandard as zstd

from dbbackupman.config import Compression
from dbbackupman.exceptions import CaptureError

logger = structlog.get_logger()

# Thread pool for CPU-bound compression
_executor = ThreadPoolExecutor(max_workers=2)

# Default compression settings
DEFAULT_GZIP_LEVEL = 9
DEFAULT_ZSTD_LEVEL = 19
CHUNK_SIZE = 256 * 1024


async def compress_file(
    path: Path,
    codec: Compression = Compression.GZIP,
    level: int | None = None,
) -> Path:
    """
    Compress ``path`` into a sibling file and remove the original.

    Args:
        path: File to compress
        codec: Compression codec (NONE returns the path unchanged)
        level: Codec level (default 9 for gzip, 19 for zstd)

    Returns:
        Path of the compressed sibling (``.gz`` or ``.zst`` appended)
    """
    if codec == Compression.NONE:
        return path

    target = path.with_name(path.name + codec.suffix)
    loop = asyncio.get_running_loop()

    try:
        if codec == Compression.GZIP:
            await loop.run_in_executor(
                _executor, _gzip_sync, path, target, level or DEFAULT_GZIP_LEVEL
            )
        else:
            await loop.run_in_executor(
                _executor, _zstd_sync, path, target, level or DEFAULT_ZSTD_LEVEL
            )
    except OSError as e:
        target.unlink(missing_ok=True)
        raise CaptureError(
            f"Failed to compress {path.name}: {e}",
            details={"path": str(path), "codec": codec.value},
        ) from e

    original_size = path.stat().st_size
    compressed_size = target.stat().st_size
    path.unlink()

    logger.debug(
        "artifact_compressed",
        path=str(target),
        codec=codec.value,
        original_size=original_size,
        compressed_size=compressed_size,
    )
    return target


def _gzip_sync(source: Path, target: Path, level: int) -> None:
    with open(source, "rb") as src, gzip.open(target, "wb", compresslevel=level) as dst:
        shutil.copyfileobj(src, dst, CHUNK_SIZE)


def _zstd_sync(source: Path, target: Path, level: int) -> None:
    cctx = zstd.ZstdCompressor(level=level)
    with open(source, "rb") as src, open(target, "wb") as dst:
        cctx.copy_stream(src, dst, read_size=CHUNK_SIZE, write_size=CHUNK_SIZE)
