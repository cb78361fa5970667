# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackupman Core - The backup run orchestrator.

A run is strictly sequential by data dependency:

1. Resolve the connection profile and workspace
2. Preflight the required binaries
3. Open the upload destinations
4. Load the prior cursor (incremental only)
5. Capture
6. Compress artifacts
7. Write the manifest locally
8. Fan out uploads (best-effort)
9. Save the next cursor (incremental only, fatal on failure)
10. Apply retention (best-effort)

Anything that would corrupt resumption (stale cursor, partial capture,
failed cursor save) aborts the run with the cursor left untouched.
Everything after "artifacts exist" is best-effort except the cursor save.
"""

from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List, Mapping

from dbbackupman.config import BackupConfig, BackupMode, Compression, ConnectionProfile


@dataclass
class BackupResult:
    """Result of one backup run."""

    run_id: str  # ULID
    mode: str
    manifest_path: Path
    artifacts: List[Path]
    meta: Dict[str, Any]
    uploads: Any  # UploadReport
    retention: List[Any] = field(default_factory=list)  # RetentionReport per location
    failed_tables: List[str] = field(default_factory=list)
    next_cursor: Dict[str, Any] | None = None
    duration_seconds: float = 0.0


async def run_backup(
    config: BackupConfig,
    *,
    runner: Any = None,
    destinations: Mapping[str, Any] | None = None,
    capture_tool: Any = None,
    now: datetime | None = None,
) -> BackupResult:
    """
    Run one backup.

    Args:
        config: Backup configuration
        runner: ProcessRunner (default: one bounded by config.command_timeout)
        destinations: Opened destinations by name (default: opened from config)
        capture_tool: Capture tool (default: the engine's tool)
        now: Run instant (default: current UTC time)

    Returns:
        BackupResult with artifacts, upload and retention outcomes

    Raises:
        ConfigurationError: If the configuration cannot be resolved
        CommandError: If a required binary is missing
        StaleCursorError: If the saved cursor no longer matches the server
        PartialCaptureError: If an incremental capture aborted partway
        CaptureError: If the main dump failed
        StateIOError: If the next cursor could not be saved
    """
    import structlog
    from ulid import ULID

    from dbbackupman.capture import get_capture_tool
    from dbbackupman.process import ProcessRunner
    from dbbackupman.state import StateStore, resolve_state_location
    from dbbackupman.storage import open_destinations
    from dbbackupman.upload import upload_artifacts

    logger = structlog.get_logger()
    run_id = str(ULID())
    start_time = datetime.now(UTC)
    mode = config.mode

    profile = ConnectionProfile.from_config(config, now)
    profile.workdir.mkdir(parents=True, exist_ok=True)

    runner = runner or ProcessRunner(timeout=config.command_timeout)
    tool = capture_tool or get_capture_tool(config.engine, runner)

    logger.info(
        "backup_started",
        run_id=run_id,
        connection=profile.connection_name,
        driver=profile.engine.value,
        database=profile.database,
        mode=mode.value,
    )

    try:
        if config.check_tools:
            await runner.check_tools(tool.required_tools(profile, mode, config.options))

        async with AsyncExitStack() as stack:
            if destinations is None:
                destinations = await stack.enter_async_context(
                    open_destinations(config.destinations)
                )

            # Step 4: Prior cursor
            store = StateStore(destinations)
            location = None
            prior_state: Dict[str, Any] = {}
            if mode == BackupMode.INCREMENTAL:
                location = resolve_state_location(
                    profile.connection_name,
                    profile.engine,
                    profile.workdir,
                    list(destinations),
                    config.remote_map,
                    config.remote_path,
                    state_disk=config.state_disk,
                    state_path=config.state_path,
                )
                prior_state = await store.load(location.key, location.name)
                logger.info(
                    "state_loaded",
                    location=location.key,
                    name=location.name,
                    first_run=not prior_state,
                )

            # Step 5: Capture
            result = await tool.capture(profile, mode, config.options, prior_state)

            # Step 6: Compression
            if config.compression != Compression.NONE:
                result.artifacts = await _compress_artifacts(result.artifacts, config.compression)

            # Step 7: Manifest
            from dbbackupman.manifest import build_manifest, manifest_filename, write_manifest

            manifest = build_manifest(profile, mode, result, config.compression, run_id=run_id)
            manifest_path = profile.workdir / manifest_filename(profile, mode)
            manifest_artifact = await write_manifest(manifest_path, manifest)

            # Step 8: Uploads
            uploads = await upload_artifacts(
                destinations,
                result.artifacts + [manifest_artifact],
                config.remote_map,
                config.remote_path,
                max_concurrent=config.max_concurrent_uploads,
            )

            # Step 9: Cursor
            if location is not None and result.next_cursor is not None:
                await store.save(location.key, location.name, result.next_cursor)

            # Step 10: Retention
            retention = []
            if config.retention_enabled:
                retention = await _apply_retention(config, profile, destinations, now)

        duration = (datetime.now(UTC) - start_time).total_seconds()

        logger.info(
            "backup_completed",
            run_id=run_id,
            artifacts=len(result.artifacts),
            upload_failures=len(uploads.failures),
            failed_tables=len(result.failed_tables),
            duration=duration,
        )

        return BackupResult(
            run_id=run_id,
            mode=mode.value,
            manifest_path=manifest_path,
            artifacts=[a.path for a in result.artifacts],
            meta=result.meta,
            uploads=uploads,
            retention=retention,
            failed_tables=list(result.failed_tables),
            next_cursor=result.next_cursor,
            duration_seconds=duration,
        )

    except Exception as e:
        logger.error("backup_failed", run_id=run_id, error=str(e))
        raise


async def _compress_artifacts(artifacts: List[Any], codec: Compression) -> List[Any]:
    from dbbackupman.compressor import compress_file

    compressed = []
    for artifact in artifacts:
        path = await compress_file(artifact.path, codec)
        compressed.append(artifact.with_path(path))
    return compressed


async def _apply_retention(
    config: BackupConfig,
    profile: ConnectionProfile,
    destinations: Mapping[str, Any],
    now: datetime | None,
) -> List[Any]:
    """Prune old sets locally and on every destination; never raises."""
    import structlog

    from dbbackupman.exceptions import RetentionError
    from dbbackupman.retention import apply_local_retention, apply_remote_retention
    from dbbackupman.storage import resolve_destination_path

    logger = structlog.get_logger()
    family = profile.family_prefix(config.mode)
    reports = []

    try:
        reports.append(
            apply_local_retention(
                profile.workdir,
                family,
                config.retention_keep,
                config.retention_days,
                now,
            )
        )
    except RetentionError as e:
        logger.warning("retention_failed", location="local", error=str(e))

    for name, destination in destinations.items():
        base = resolve_destination_path(name, config.remote_map, config.remote_path)
        try:
            reports.append(
                await apply_remote_retention(
                    destination,
                    base,
                    family,
                    config.retention_keep,
                    config.retention_days,
                    now,
                )
            )
        except RetentionError as e:
            logger.warning("retention_failed", location=name, error=str(e))

    return reports
