# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackupman Upload - Fan artifacts out to every configured destination.

Destinations are served in parallel. Within one destination the data
artifacts are uploaded with bounded concurrency and the manifest is
uploaded last, so a manifest visible on a destination implies its
siblings were attempted before it. Every (destination, file) transfer is
independent; failures are recorded and never fail the run.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Mapping

import structlog

from dbbackupman.exceptions import StorageError, UploadFailedError
from dbbackupman.manifest import Artifact, ArtifactRole
from dbbackupman.storage import StorageDestination, join_remote, resolve_destination_path

logger = structlog.get_logger()


@dataclass(frozen=True)
class UploadFailure:
    """One artifact that could not be uploaded to one destination."""

    destination: str
    key: str
    error: str


@dataclass
class UploadReport:
    """Outcome of a fan-out."""

    uploaded: Dict[str, List[str]] = field(default_factory=dict)  # destination -> keys
    failures: List[UploadFailure] = field(default_factory=list)
    bytes_uploaded: int = 0

    @property
    def ok(self) -> bool:
        return not self.failures


async def upload_artifacts(
    destinations: Mapping[str, StorageDestination],
    artifacts: List[Artifact],
    remote_map: Mapping[str, str],
    fallback_path: str,
    max_concurrent: int = 4,
) -> UploadReport:
    """
    Upload every artifact to every destination.

    Args:
        destinations: Opened destinations by name
        artifacts: Artifacts of the run (manifest included)
        remote_map: Per-destination base paths
        fallback_path: Base path for unmapped destinations
        max_concurrent: Maximum concurrent uploads per destination

    Returns:
        UploadReport with per-destination keys and failures
    """
    report = UploadReport()
    if not destinations or not artifacts:
        return report

    siblings = [a for a in artifacts if a.role != ArtifactRole.MANIFEST]
    manifests = [a for a in artifacts if a.role == ArtifactRole.MANIFEST]

    async def upload_one(destination: StorageDestination, base: str, artifact: Artifact) -> None:
        key = join_remote(base, artifact.name)
        try:
            size = await destination.put_file(key, artifact.path)
        except StorageError as e:
            error = UploadFailedError(e.message, details=e.details)
        except Exception as e:
            error = UploadFailedError(str(e), details={"error_type": type(e).__name__})
        else:
            report.uploaded.setdefault(destination.name, []).append(key)
            report.bytes_uploaded += size
            return

        logger.error(
            "artifact_upload_failed",
            destination=destination.name,
            key=key,
            error=error.message,
            details=error.details,
        )
        report.failures.append(UploadFailure(destination.name, key, str(error)))

    async def upload_destination(name: str, destination: StorageDestination) -> None:
        base = resolve_destination_path(name, remote_map, fallback_path)
        semaphore = asyncio.Semaphore(max_concurrent)

        async def bounded(artifact: Artifact) -> None:
            async with semaphore:
                await upload_one(destination, base, artifact)

        await asyncio.gather(*(bounded(a) for a in siblings))

        for manifest in manifests:
            await upload_one(destination, base, manifest)

        logger.info(
            "destination_upload_complete",
            destination=name,
            base_path=base,
            files=len(report.uploaded.get(name, [])),
        )

    await asyncio.gather(
        *(upload_destination(name, dest) for name, dest in destinations.items())
    )

    return report
