# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
MySQL Capture - mysqldump snapshots and binary-log incrementals.

Incrementals replay the server's binary log from the saved cursor up to
the server's current write position. The exported range of run N ends
exactly where the range of run N+1 starts, so consecutive incrementals
form a gap-free, non-overlapping chain.

For incrementals the server must run with binary logging enabled and the
user needs the REPLICATION CLIENT (inventory) and REPLICATION SLAVE
(mysqlbinlog --read-from-remote-server) privileges.
"""

import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping

import structlog

from dbbackupman.capture import CaptureResult
from dbbackupman.config import BackupMode, CaptureOptions, ConnectionProfile
from dbbackupman.exceptions import (
    CaptureError,
    CommandError,
    PartialCaptureError,
    StaleCursorError,
)
from dbbackupman.manifest import Artifact, ArtifactRole
from dbbackupman.process import ProcessRunner, build_env

logger = structlog.get_logger()

# First event offset in a binlog file (right after the magic header)
BINLOG_START_POSITION = 4

_DIGITS = re.compile(r"(\d+)")


def natural_key(name: str) -> List[Any]:
    """Sort key ordering 'mysql-bin.000010' after 'mysql-bin.000009'."""
    return [int(part) if part.isdigit() else part for part in _DIGITS.split(name)]


@dataclass(frozen=True)
class LogInventory:
    """The server's binary log segments and current write position."""

    segments: List[str]
    current_segment: str
    current_pos: int


@dataclass(frozen=True)
class BinlogCursor:
    """Byte position up to which the log has been captured."""

    file: str
    pos: int

    @classmethod
    def from_state(cls, state: Mapping[str, Any] | None) -> "BinlogCursor | None":
        """Read a cursor from saved state; anything unusable means no cursor."""
        if not state or not state.get("file"):
            return None
        try:
            return cls(file=str(state["file"]), pos=int(state.get("pos", BINLOG_START_POSITION)))
        except (TypeError, ValueError):
            logger.warning("binlog_cursor_invalid", state=dict(state))
            return None

    def to_state(self) -> Dict[str, Any]:
        return {"file": self.file, "pos": self.pos}


@dataclass(frozen=True)
class BinlogSegmentRange:
    """One segment to export; ``stop_pos`` None means to the end of the segment."""

    segment: str
    start_pos: int
    stop_pos: int | None = None

    @property
    def is_empty(self) -> bool:
        return self.stop_pos is not None and self.stop_pos <= self.start_pos


@dataclass(frozen=True)
class BinlogChain:
    """Ordered ranges covering cursor -> current position."""

    segments: List[BinlogSegmentRange]
    start: BinlogCursor
    next_cursor: BinlogCursor

    @property
    def is_empty(self) -> bool:
        return all(r.is_empty for r in self.segments)


def resolve_binlog_chain(inventory: LogInventory, cursor: BinlogCursor | None) -> BinlogChain:
    """
    Compute the segment ranges to export.

    Args:
        inventory: Current server log inventory
        cursor: Saved cursor, or None on the first run

    Returns:
        BinlogChain from the cursor (or the start of the current segment)
        through the current write position

    Raises:
        StaleCursorError: If the cursor no longer matches the server's logs
    """
    current = BinlogCursor(inventory.current_segment, inventory.current_pos)

    names = list(dict.fromkeys(inventory.segments))
    if current.file not in names:
        names.append(current.file)
    names.sort(key=natural_key)

    if cursor is None:
        start = BinlogCursor(current.file, BINLOG_START_POSITION)
    else:
        start = cursor

    if start.file not in names:
        raise StaleCursorError(
            f"Saved binlog segment {start.file} is no longer on the server",
            details={"cursor": start.to_state(), "segments": names},
        )

    start_idx = names.index(start.file)
    end_idx = names.index(current.file)

    if start_idx > end_idx or (start_idx == end_idx and start.pos > current.pos):
        raise StaleCursorError(
            "Saved binlog cursor is ahead of the server position (log reset?)",
            details={"cursor": start.to_state(), "current": current.to_state()},
        )

    chain_names = names[start_idx : end_idx + 1]
    ranges = []
    for i, segment in enumerate(chain_names):
        start_pos = start.pos if i == 0 else BINLOG_START_POSITION
        stop_pos = current.pos if i == len(chain_names) - 1 else None
        ranges.append(BinlogSegmentRange(segment, start_pos, stop_pos))

    logger.info(
        "binlog_chain_resolved",
        segments=len(ranges),
        start_file=start.file,
        start_pos=start.pos,
        end_file=current.file,
        end_pos=current.pos,
    )

    return BinlogChain(segments=ranges, start=start, next_cursor=current)


async def fetch_binlog_inventory(profile: ConnectionProfile) -> LogInventory:
    """
    Query the server's binary log inventory.

    Uses SHOW BINARY LOGS and SHOW MASTER STATUS, falling back to
    SHOW BINARY LOG STATUS on servers where the former was removed.

    Raises:
        CaptureError: If the server cannot be reached or binary logging is off
    """
    import aiomysql

    try:
        conn = await aiomysql.connect(
            host=profile.host,
            port=profile.port,
            user=profile.username,
            password=profile.password or "",
            db=profile.database,
            charset="utf8mb4",
        )
    except (aiomysql.Error, OSError) as e:
        raise CaptureError(
            f"Failed to connect to MySQL: {e}",
            details={"host": profile.host, "port": profile.port, "user": profile.username},
        ) from e

    try:
        async with conn.cursor(aiomysql.DictCursor) as cursor:
            try:
                await cursor.execute("SHOW BINARY LOGS")
                logs = await cursor.fetchall()
            except aiomysql.Error as e:
                logger.debug("binary_logs_unavailable", error=str(e))
                logs = []

            status = None
            for statement in ("SHOW MASTER STATUS", "SHOW BINARY LOG STATUS"):
                try:
                    await cursor.execute(statement)
                    status = await cursor.fetchone()
                    break
                except aiomysql.Error as e:
                    logger.debug("binlog_status_query_failed", statement=statement, error=str(e))
    finally:
        conn.close()

    segments = [row.get("Log_name") or row.get("File_name") for row in logs or []]
    segments = [s for s in segments if s]

    if (not status or not status.get("File")) and not segments:
        raise CaptureError(
            "Binary logs not enabled or not accessible",
            details={"host": profile.host, "database": profile.database},
        )

    if status and status.get("File"):
        current_segment = status["File"]
        current_pos = int(status.get("Position") or BINLOG_START_POSITION)
    else:
        last = logs[-1]
        current_segment = segments[-1]
        current_pos = int(last.get("File_size") or BINLOG_START_POSITION)

    return LogInventory(segments=segments, current_segment=current_segment, current_pos=current_pos)


InventoryProvider = Callable[[ConnectionProfile], Awaitable[LogInventory]]


class MySQLCaptureTool:
    """mysqldump snapshots and mysqlbinlog incrementals."""

    def __init__(
        self,
        runner: ProcessRunner,
        inventory_provider: InventoryProvider | None = None,
    ):
        self.runner = runner
        self.inventory_provider = inventory_provider or fetch_binlog_inventory

    def required_tools(self, profile: ConnectionProfile, mode: BackupMode, options: CaptureOptions) -> List[str]:
        if mode == BackupMode.INCREMENTAL:
            return [profile.tools.mysqlbinlog]
        return [profile.tools.mysqldump]

    async def capture(
        self,
        profile: ConnectionProfile,
        mode: BackupMode,
        options: CaptureOptions,
        prior_state: Mapping[str, Any],
    ) -> CaptureResult:
        if mode == BackupMode.INCREMENTAL:
            return await self._capture_incremental(profile, prior_state)
        return await self._dump(profile, mode)

    def _env(self, profile: ConnectionProfile) -> Dict[str, str]:
        return build_env({"MYSQL_PWD": profile.password or ""})

    async def _dump(self, profile: ConnectionProfile, mode: BackupMode) -> CaptureResult:
        path = profile.artifact_path(mode, "sql")
        cmd = [
            profile.tools.mysqldump,
            f"--host={profile.host}",
            f"--port={profile.port}",
            f"--user={profile.username}",
            "--single-transaction",
            "--routines",
            "--events",
            "--triggers",
            "--hex-blob",
            "--set-gtid-purged=OFF",
        ]
        if mode == BackupMode.SCHEMA:
            cmd.append("--no-data")
        cmd.append(profile.database)

        try:
            size = await self.runner.run_to_file(cmd, path, env=self._env(profile))
        except CommandError as e:
            path.unlink(missing_ok=True)
            raise CaptureError(
                f"mysqldump failed for {profile.database}: {e.message}",
                details=e.details,
            ) from e

        logger.info("dump_complete", engine="mysql", mode=mode.value, path=str(path), size=size)

        return CaptureResult(
            artifacts=[Artifact(path, ArtifactRole.DUMP)],
            meta={"dump_type": "mysqldump", "schema_only": mode == BackupMode.SCHEMA},
        )

    async def _capture_incremental(
        self,
        profile: ConnectionProfile,
        prior_state: Mapping[str, Any],
    ) -> CaptureResult:
        inventory = await self.inventory_provider(profile)
        chain = resolve_binlog_chain(inventory, BinlogCursor.from_state(prior_state))

        path = profile.artifact_path(BackupMode.INCREMENTAL, "binlog.sql")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"")

        exported: List[str] = []
        for segment_range in chain.segments:
            if segment_range.is_empty:
                continue

            cmd = [
                profile.tools.mysqlbinlog,
                "--read-from-remote-server",
                f"--host={profile.host}",
                f"--port={profile.port}",
                f"--user={profile.username}",
                "--verbose",
                f"--start-position={segment_range.start_pos}",
            ]
            if segment_range.stop_pos is not None:
                cmd.append(f"--stop-position={segment_range.stop_pos}")
            cmd.append(segment_range.segment)

            try:
                await self.runner.run_to_file(cmd, path, env=self._env(profile), append=True)
            except CommandError as e:
                logger.error(
                    "binlog_export_failed",
                    segment=segment_range.segment,
                    exported=exported,
                    error=e.message,
                )
                raise PartialCaptureError(
                    f"mysqlbinlog failed for {segment_range.segment}: {e.message}",
                    details={
                        "segment": segment_range.segment,
                        "exported": exported,
                        "timed_out": e.details.get("timed_out", False),
                    },
                    artifacts=[path],
                ) from e

            exported.append(segment_range.segment)

        logger.info(
            "binlog_export_complete",
            path=str(path),
            segments=exported,
            size=path.stat().st_size,
        )

        return CaptureResult(
            artifacts=[Artifact(path, ArtifactRole.INCREMENTAL_LOG)],
            meta={
                "incremental_type": "binlog",
                "from": chain.start.to_state(),
                "to": chain.next_cursor.to_state(),
                "segments": exported,
            },
            next_cursor=chain.next_cursor.to_state(),
        )
