# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackupman State Store - Persist the incremental resumption cursor.

One small JSON object per (connection, engine) holds the cursor fields.
Loading is soft: a missing, malformed or unreachable state file means
"no prior state" and the run behaves like a first run. Saving is strict:
if the cursor cannot be written after a successful capture, the next run
would not know where to resume, so the failure is raised.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping

import aiofiles
import structlog

from dbbackupman.config import Engine
from dbbackupman.exceptions import StateIOError, StorageError
from dbbackupman.storage import StorageDestination, join_remote, resolve_destination_path

logger = structlog.get_logger()

LOCAL = "local"


@dataclass(frozen=True)
class StateLocation:
    """Where a cursor lives: ``key`` is 'local' or a destination name."""

    key: str
    name: str


def state_filename(connection_name: str, engine: Engine) -> str:
    return f"{connection_name}_{engine.value}_state.json"


def resolve_state_location(
    connection_name: str,
    engine: Engine,
    workdir: Path,
    destinations: list[str],
    remote_map: Mapping[str, str],
    remote_path: str,
    state_disk: str | None = None,
    state_path: str | None = None,
) -> StateLocation:
    """
    Decide where the cursor for (connection, engine) is stored.

    The state disk is ``state_disk`` when given, else the first upload
    destination, else the local filesystem. On a destination the state
    lives under ``state_path`` when given, else ``{destination path}/_state``.

    Returns:
        StateLocation for StateStore.load/save
    """
    filename = state_filename(connection_name, engine)
    disk = state_disk or (destinations[0] if destinations else None)

    if disk is None or disk == LOCAL:
        return StateLocation(LOCAL, str(Path(workdir) / "_state" / filename))

    if state_path is not None:
        base = state_path.strip("/")
    else:
        mapped = resolve_destination_path(disk, remote_map, remote_path)
        base = join_remote(mapped, "_state")

    return StateLocation(disk, join_remote(base, filename))


class StateStore:
    """Loads and saves cursor JSON locally or on a named destination."""

    def __init__(self, destinations: Mapping[str, StorageDestination] | None = None):
        self.destinations = dict(destinations or {})

    async def load(self, location_key: str, name: str) -> Dict[str, Any]:
        """
        Load a state mapping.

        Returns:
            The saved mapping, or {} if absent, malformed or unreachable
        """
        try:
            raw = await self._read(location_key, name)
        except (OSError, StorageError, StateIOError) as e:
            logger.warning(
                "state_load_failed",
                location=location_key,
                name=name,
                error=str(e),
            )
            return {}

        if raw is None:
            return {}

        try:
            data = json.loads(raw)
        except (ValueError, UnicodeDecodeError):
            logger.warning("state_malformed", location=location_key, name=name)
            return {}

        if not isinstance(data, dict):
            logger.warning("state_malformed", location=location_key, name=name)
            return {}

        return data

    async def save(self, location_key: str, name: str, state: Mapping[str, Any]) -> None:
        """
        Save a state mapping, replacing any previous one.

        Raises:
            StateIOError: If the state could not be written
        """
        payload = json.dumps(dict(state), indent=2, sort_keys=True).encode("utf-8")

        try:
            if location_key == LOCAL:
                await self._write_local(Path(name), payload)
            else:
                await self._destination(location_key).put(name, payload)
        except (OSError, StorageError) as e:
            raise StateIOError(
                f"Failed to save state: {e}",
                details={"location": location_key, "name": name},
            ) from e

        logger.info("state_saved", location=location_key, name=name)

    async def _read(self, location_key: str, name: str) -> bytes | None:
        if location_key == LOCAL:
            path = Path(name)
            if not path.is_file():
                return None
            async with aiofiles.open(path, "rb") as f:
                return await f.read()

        destination = self._destination(location_key)
        if not await destination.exists(name):
            return None
        return await destination.get(name)

    async def _write_local(self, path: Path, payload: bytes) -> None:
        # Write atomically: temp file -> rename
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(path.name + ".tmp")
        try:
            async with aiofiles.open(temp_path, "wb") as f:
                await f.write(payload)
                await f.flush()
            os.replace(temp_path, path)
        finally:
            temp_path.unlink(missing_ok=True)

    def _destination(self, location_key: str) -> StorageDestination:
        destination = self.destinations.get(location_key)
        if destination is None:
            raise StateIOError(
                f"Unknown state location: {location_key}",
                details={"known": sorted(self.destinations)},
            )
        return destination
