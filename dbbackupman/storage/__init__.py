# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Storage Layer - Named destinations that backup artifacts are pushed to.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Mapping, Protocol

from dbbackupman.config import DestinationConfig, DestinationKind
from dbbackupman.exceptions import ConfigurationError


class StorageDestination(Protocol):
    """Byte-level operations on one named storage destination."""

    name: str

    async def exists(self, key: str) -> bool:
        ...

    async def get(self, key: str) -> bytes:
        ...

    async def put(self, key: str, data: bytes) -> None:
        ...

    async def put_file(self, key: str, path: Path) -> int:
        """Upload a local file without loading it whole; returns bytes sent."""
        ...

    async def list(self, prefix: str = "") -> List[str]:
        """Return keys (relative to the destination root) starting with prefix."""
        ...

    async def delete(self, key: str) -> None:
        ...


def resolve_destination_path(
    destination: str,
    explicit_map: Mapping[str, str],
    fallback: str,
) -> str:
    """
    Resolve the remote base path for a destination.

    An explicit mapping wins even when it is the empty string, which means
    the destination root. Unmapped destinations use the fallback.

    Args:
        destination: Destination name
        explicit_map: Per-destination base paths
        fallback: Base path for destinations not in the map

    Returns:
        Base path with leading/trailing slashes removed (may be "")
    """
    if destination in explicit_map:
        return (explicit_map[destination] or "").strip("/")
    return (fallback or "").strip("/")


def join_remote(base_path: str, name: str) -> str:
    """Join a base path (possibly empty) and a name with a single slash."""
    base = base_path.strip("/")
    return f"{base}/{name}" if base else name


def create_destination(config: DestinationConfig) -> StorageDestination:
    """Create an (unopened) destination for the given settings."""
    if config.kind == DestinationKind.LOCAL:
        from dbbackupman.storage.local import LocalDirectoryDestination

        return LocalDirectoryDestination(config.name, config.root)
    elif config.kind == DestinationKind.S3:
        from dbbackupman.storage.s3 import S3Destination

        return S3Destination(
            config.name,
            bucket=config.bucket,
            region=config.region,
            endpoint_url=config.endpoint_url,
        )
    else:
        raise ConfigurationError(f"Unsupported destination kind: {config.kind}")


@asynccontextmanager
async def open_destinations(
    configs: List[DestinationConfig],
) -> AsyncIterator[Dict[str, StorageDestination]]:
    """
    Open every configured destination for the duration of a run.

    Yields:
        Mapping of destination name to opened destination
    """
    from contextlib import AsyncExitStack

    async with AsyncExitStack() as stack:
        opened: Dict[str, StorageDestination] = {}
        for config in configs:
            destination = create_destination(config)
            opened[config.name] = await stack.enter_async_context(destination)
        yield opened


__all__ = [
    "StorageDestination",
    "resolve_destination_path",
    "join_remote",
    "create_destination",
    "open_destinations",
]
