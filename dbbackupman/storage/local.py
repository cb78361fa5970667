# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Local directory destination - a mounted disk or network share used as a
storage destination.

Writes are atomic (write to temp, then rename) so readers never observe a
partially written object.
"""

import os
from pathlib import Path
from typing import List

import aiofiles
import structlog

from dbbackupman.exceptions import StorageError

logger = structlog.get_logger()

COPY_CHUNK_SIZE = 1024 * 1024


class LocalDirectoryDestination:
    """Storage destination rooted at a local directory."""

    def __init__(self, name: str, root: Path):
        self.name = name
        self.root = Path(root)

    async def __aenter__(self) -> "LocalDirectoryDestination":
        self.root.mkdir(parents=True, exist_ok=True)
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    def _path(self, key: str) -> Path:
        path = (self.root / key.lstrip("/")).resolve()
        root = self.root.resolve()
        if path != root and root not in path.parents:
            raise StorageError(
                f"Key escapes destination root: {key}",
                details={"destination": self.name, "key": key},
            )
        return path

    async def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    async def get(self, key: str) -> bytes:
        try:
            async with aiofiles.open(self._path(key), "rb") as f:
                return await f.read()
        except OSError as e:
            raise StorageError(
                f"Failed to read {key}: {e}",
                details={"destination": self.name, "key": key},
            ) from e

    async def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        temp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_path, "wb") as f:
                await f.write(data)
            os.replace(temp_path, path)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise StorageError(
                f"Failed to write {key}: {e}",
                details={"destination": self.name, "key": key},
            ) from e

    async def put_file(self, key: str, path: Path) -> int:
        """Copy a local file in chunks; returns the number of bytes written."""
        target = self._path(key)
        temp_path = target.with_name(target.name + ".tmp")
        written = 0
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "rb") as src, aiofiles.open(temp_path, "wb") as dst:
                while True:
                    chunk = await src.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    await dst.write(chunk)
                    written += len(chunk)
            os.replace(temp_path, target)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise StorageError(
                f"Failed to write {key} from {path}: {e}",
                details={"destination": self.name, "key": key, "path": str(path)},
            ) from e
        return written

    async def list(self, prefix: str = "") -> List[str]:
        if not self.root.exists():
            return []
        keys = []
        for path in self.root.rglob("*"):
            if not path.is_file():
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    async def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(
                f"Failed to delete {key}: {e}",
                details={"destination": self.name, "key": key},
            ) from e
        logger.debug("local_object_deleted", destination=self.name, key=key)
