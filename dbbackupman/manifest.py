# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackupman Manifest - The per-run record of artifacts and metadata.

The manifest is the append-only audit log of backup runs and the unit of
retention: its filename embeds the run's retention token, and every
artifact of the run is named ``{database}_{abbrev}_{mode}_{token}.<suffix>``
so that pruning a manifest prunes all of its siblings with it.

Filename grammar (stable):
    {database}_{engineAbbrev}_{mode}_{Ymd_His}[_{tag}].manifest.json
"""

import json
import os
from dataclasses import dataclass
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict

import aiofiles
import structlog

from dbbackupman.config import BackupMode, Compression, ConnectionProfile

if TYPE_CHECKING:
    from dbbackupman.capture import CaptureResult

logger = structlog.get_logger()

MANIFEST_SUFFIX = "manifest.json"


class ArtifactRole(str, Enum):
    """Logical role of a produced file."""

    DUMP = "dump"
    GLOBALS = "globals"
    SCHEMA_DUMP = "schema-dump"
    INCREMENTAL_LOG = "incremental-log"
    INCREMENTAL_TABLE_CSV = "incremental-table-csv"
    MANIFEST = "manifest"


@dataclass(frozen=True)
class Artifact:
    """One file produced by a run."""

    path: Path
    role: ArtifactRole

    @property
    def name(self) -> str:
        return self.path.name

    def with_path(self, path: Path) -> "Artifact":
        return Artifact(path=path, role=self.role)


def manifest_filename(profile: ConnectionProfile, mode: BackupMode) -> str:
    return f"{profile.file_base(mode)}.{MANIFEST_SUFFIX}"


def build_manifest(
    profile: ConnectionProfile,
    mode: BackupMode,
    result: "CaptureResult",
    compression: Compression = Compression.NONE,
    run_id: str | None = None,
    at: datetime | None = None,
) -> Dict[str, Any]:
    """
    Assemble the manifest record for a run.

    Args:
        profile: Connection profile of the run
        mode: Backup mode
        result: Capture result (artifacts already in their final form)
        compression: Codec applied to the artifacts
        run_id: Run identifier (ULID)
        at: Manifest timestamp (default: now)

    Returns:
        JSON-serializable manifest dict
    """
    if run_id is None:
        from ulid import ULID

        run_id = str(ULID())

    manifest: Dict[str, Any] = {
        "run_id": run_id,
        "at_utc": (at or datetime.now(UTC)).isoformat(),
        "connection": profile.connection_name,
        "driver": profile.engine.value,
        "database": profile.database,
        "mode": mode.value,
        "compression": None if compression == Compression.NONE else compression.value,
        "gzip": compression == Compression.GZIP,
        "note": profile.tag,
        "files": [a.name for a in result.artifacts if a.role != ArtifactRole.MANIFEST],
        "artifacts": [
            {"name": a.name, "role": a.role.value}
            for a in result.artifacts
            if a.role != ArtifactRole.MANIFEST
        ],
        "meta": dict(result.meta),
    }

    if mode == BackupMode.INCREMENTAL:
        manifest["next_cursor"] = result.next_cursor
        if profile.engine.value == "pgsql":
            manifest["failed_tables"] = list(result.failed_tables)

    return manifest


async def write_manifest(path: Path, manifest: Dict[str, Any]) -> Artifact:
    """
    Write the manifest atomically (write to temp, then rename).

    Returns:
        Artifact for the written manifest
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(path.name + ".tmp")

    async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
        await f.write(json.dumps(manifest, indent=2, sort_keys=False))
        await f.flush()
    os.replace(temp_path, path)

    logger.info(
        "manifest_written",
        path=str(path),
        files=len(manifest.get("files", [])),
    )
    return Artifact(path=path, role=ArtifactRole.MANIFEST)
