# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Capture Layer - Produce snapshot and incremental artifacts per engine.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Protocol

from dbbackupman.config import BackupMode, CaptureOptions, ConnectionProfile, Engine
from dbbackupman.exceptions import ConfigurationError
from dbbackupman.manifest import Artifact
from dbbackupman.process import ProcessRunner


@dataclass
class CaptureResult:
    """What one capture produced."""

    artifacts: List[Artifact] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)
    # Cursor to persist after the run (incremental only)
    next_cursor: Dict[str, Any] | None = None
    # schema.table names whose extraction failed (PostgreSQL incremental)
    failed_tables: List[str] = field(default_factory=list)


class CaptureTool(Protocol):
    """Protocol for engine-specific capture tools."""

    def required_tools(self, profile: ConnectionProfile, mode: BackupMode, options: CaptureOptions) -> List[str]:
        """Binaries this capture will invoke."""
        ...

    async def capture(
        self,
        profile: ConnectionProfile,
        mode: BackupMode,
        options: CaptureOptions,
        prior_state: Mapping[str, Any],
    ) -> CaptureResult:
        """
        Produce the artifacts of one run.

        Args:
            profile: Connection profile of the run
            mode: Backup mode
            options: Capture options
            prior_state: Saved cursor ({} on first run)

        Returns:
            CaptureResult with artifacts, manifest meta and the next cursor
        """
        ...


def get_capture_tool(engine: Engine, runner: ProcessRunner, **providers: Any) -> CaptureTool:
    """
    Create the capture tool for an engine.

    Args:
        engine: Database engine
        runner: Process runner for the dump/export binaries
        **providers: Optional overrides of the server queries
            (``inventory_provider`` for MySQL, ``table_provider`` and
            ``schema_provider`` for PostgreSQL)

    Raises:
        ConfigurationError: If the engine is unsupported
    """
    if engine == Engine.MYSQL:
        from dbbackupman.capture.mysql import MySQLCaptureTool

        return MySQLCaptureTool(runner, **providers)
    elif engine == Engine.POSTGRES:
        from dbbackupman.capture.postgres import PostgresCaptureTool

        return PostgresCaptureTool(runner, **providers)
    else:
        raise ConfigurationError(f"Unsupported engine: {engine}")


__all__ = [
    "CaptureResult",
    "CaptureTool",
    "get_capture_tool",
]
