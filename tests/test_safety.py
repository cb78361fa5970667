# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Critical Safety Tests for dbbackupman.

These tests verify the core guarantees:
1. Binlog chain continuity - consecutive incrementals never gap or overlap
2. Timestamp boundary - rows are exported strictly after the cutoff
3. Resumption safety - a failed or stale capture never advances the cursor
4. Retention determinism - victims are a pure function of the listing
5. Upload ordering - a manifest is uploaded after its siblings

These tests MUST pass before any production deployment.
"""

import json
from datetime import datetime, timedelta, UTC
from pathlib import Path

import pytest

from conftest import RUN_AT, FakeProcessRunner, MemoryDestination, make_config, make_profile
from dbbackupman.capture.mysql import (
    BinlogCursor,
    LogInventory,
    MySQLCaptureTool,
    resolve_binlog_chain,
)
from dbbackupman.capture.postgres import (
    PostgresCaptureTool,
    TrackedTable,
    filter_tables,
    resolve_cutoff,
)
from dbbackupman.config import BackupMode, CaptureOptions, Engine
from dbbackupman.core import run_backup
from dbbackupman.exceptions import (
    CommandError,
    ConfigurationError,
    PartialCaptureError,
    StaleCursorError,
    StateIOError,
)
from dbbackupman.retention import apply_local_retention, retention_victims
from dbbackupman.storage import resolve_destination_path


def manifest(token: str, family: str = "shop_pg_full_") -> str:
    return f"{family}{token}.manifest.json"


T1 = "20250101_000000"
T2 = "20250102_000000"
T3 = "20250103_000000"
T4 = "20250104_000000"
T5 = "20250105_000000"


# ============================================================================
# Test 1: BINLOG CHAIN CONTINUITY
# ============================================================================

def test_first_run_starts_at_current_segment_baseline():
    """With no cursor the chain is the current segment from offset 4."""
    inventory = LogInventory(["bin.000001", "bin.000002"], "bin.000002", 1200)

    chain = resolve_binlog_chain(inventory, None)

    assert len(chain.segments) == 1
    only = chain.segments[0]
    assert (only.segment, only.start_pos, only.stop_pos) == ("bin.000002", 4, 1200)
    assert chain.next_cursor == BinlogCursor("bin.000002", 1200)


def test_consecutive_runs_form_gap_free_chain():
    """Run N+1 starts exactly where run N stopped."""
    first = resolve_binlog_chain(LogInventory(["bin.000001"], "bin.000001", 500), None)

    inventory = LogInventory(["bin.000001", "bin.000002", "bin.000003"], "bin.000003", 120)
    second = resolve_binlog_chain(inventory, first.next_cursor)

    ranges = [(r.segment, r.start_pos, r.stop_pos) for r in second.segments]
    assert ranges == [
        ("bin.000001", 500, None),
        ("bin.000002", 4, None),
        ("bin.000003", 4, 120),
    ]
    # Previous stop == next start
    assert first.segments[-1].stop_pos == second.segments[0].start_pos
    assert second.start == first.next_cursor
    assert second.next_cursor == BinlogCursor("bin.000003", 120)


def test_chain_uses_natural_segment_order():
    inventory = LogInventory(["bin.10", "bin.9", "bin.11"], "bin.11", 7)

    chain = resolve_binlog_chain(inventory, BinlogCursor("bin.9", 50))

    assert [r.segment for r in chain.segments] == ["bin.9", "bin.10", "bin.11"]


def test_current_segment_missing_from_listing_is_added():
    inventory = LogInventory(["bin.000001"], "bin.000002", 40)

    chain = resolve_binlog_chain(inventory, BinlogCursor("bin.000001", 10))

    assert [r.segment for r in chain.segments] == ["bin.000001", "bin.000002"]


def test_cursor_at_current_position_is_empty_chain():
    inventory = LogInventory(["bin.000003"], "bin.000003", 900)

    chain = resolve_binlog_chain(inventory, BinlogCursor("bin.000003", 900))

    assert chain.is_empty
    assert chain.next_cursor == BinlogCursor("bin.000003", 900)


def test_purged_cursor_segment_is_stale():
    inventory = LogInventory(["bin.000007", "bin.000008"], "bin.000008", 100)

    with pytest.raises(StaleCursorError):
        resolve_binlog_chain(inventory, BinlogCursor("bin.000002", 400))


def test_cursor_ahead_of_server_is_stale():
    """A reset log (cursor beyond the current position) is not silently accepted."""
    inventory = LogInventory(["bin.000001"], "bin.000001", 100)

    with pytest.raises(StaleCursorError):
        resolve_binlog_chain(inventory, BinlogCursor("bin.000001", 5000))


# ============================================================================
# Test 2: TIMESTAMP STRICT BOUNDARY
# ============================================================================

def test_cutoff_precedence():
    now = datetime(2025, 3, 1, 12, 0, 0, tzinfo=UTC)
    cursor = {"since_utc": "2025-02-28T10:00:00+00:00"}

    assert resolve_cutoff("2025-01-01T00:00:00Z", cursor, now) == datetime(2025, 1, 1, tzinfo=UTC)
    assert resolve_cutoff(None, cursor, now) == datetime(2025, 2, 28, 10, tzinfo=UTC)
    assert resolve_cutoff(None, {}, now) == now - timedelta(hours=24)


def test_invalid_override_raises_and_invalid_cursor_is_ignored():
    now = datetime(2025, 3, 1, tzinfo=UTC)

    with pytest.raises(ConfigurationError):
        resolve_cutoff("yesterday", {}, now)

    assert resolve_cutoff(None, {"since_utc": "garbage"}, now) == now - timedelta(hours=24)


@pytest.mark.asyncio
async def test_next_cutoff_is_previous_run_start(temp_dir: Path):
    """The second run exports rows strictly after the first run's start."""
    clock_values = iter([RUN_AT, RUN_AT + timedelta(hours=1)])
    runner = FakeProcessRunner(lambda cmd: b"id,updated_at\n1,2025-01-02\n")

    async def tables(profile, columns):
        return [TrackedTable("public", "users", "updated_at")]

    tool = PostgresCaptureTool(runner, table_provider=tables, clock=lambda: next(clock_values))
    profile = make_profile(temp_dir, Engine.POSTGRES)
    options = CaptureOptions()

    first = await tool.capture(profile, BackupMode.INCREMENTAL, options, {})
    assert first.next_cursor == {"since_utc": RUN_AT.isoformat()}

    await tool.capture(profile, BackupMode.INCREMENTAL, options, first.next_cursor)

    sql = runner.calls[-1].cmd[-1]
    assert "\"updated_at\" > '2025-01-02T03:04:05+00:00'::timestamptz" in sql


# ============================================================================
# Test 3: RESUMPTION SAFETY
# ============================================================================

def _write_local_state(config, payload: dict) -> Path:
    path = Path(config.output_dir) / "_state" / f"{config.connection_name}_mysql_state.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload))
    return path


@pytest.mark.asyncio
async def test_stale_cursor_aborts_run_and_keeps_state(temp_dir: Path):
    config = make_config(temp_dir, Engine.MYSQL, mode=BackupMode.INCREMENTAL)
    state_path = _write_local_state(config, {"file": "bin.000001", "pos": 500})
    before = state_path.read_text()

    async def inventory(profile):
        return LogInventory(["bin.000007"], "bin.000007", 100)

    runner = FakeProcessRunner()
    tool = MySQLCaptureTool(runner, inventory_provider=inventory)

    with pytest.raises(StaleCursorError):
        await run_backup(config, runner=runner, capture_tool=tool, now=RUN_AT)

    assert state_path.read_text() == before
    assert runner.calls == []
    assert list(Path(config.output_dir).glob("*.manifest.json")) == []


@pytest.mark.asyncio
async def test_partial_capture_keeps_artifact_and_does_not_advance(temp_dir: Path):
    config = make_config(temp_dir, Engine.MYSQL, mode=BackupMode.INCREMENTAL)
    state_path = _write_local_state(config, {"file": "bin.000001", "pos": 500})
    before = state_path.read_text()

    async def inventory(profile):
        return LogInventory(["bin.000001", "bin.000002", "bin.000003"], "bin.000003", 200)

    def handler(cmd):
        if cmd[-1] == "bin.000002":
            return CommandError("mysqlbinlog failed", details={"returncode": 1})
        return b"# events\n"

    runner = FakeProcessRunner(handler, partial_output=b"# partial\n")
    tool = MySQLCaptureTool(runner, inventory_provider=inventory)

    with pytest.raises(PartialCaptureError) as exc_info:
        await run_backup(config, runner=runner, capture_tool=tool, now=RUN_AT)

    error = exc_info.value
    assert error.details["segment"] == "bin.000002"
    assert error.details["exported"] == ["bin.000001"]
    assert len(error.artifacts) == 1
    assert error.artifacts[0].read_bytes() == b"# events\n# partial\n"
    # bin.000003 never attempted
    assert [c.cmd[-1] for c in runner.calls] == ["bin.000001", "bin.000002"]
    assert state_path.read_text() == before


@pytest.mark.asyncio
async def test_state_save_failure_is_fatal(temp_dir: Path):
    config = make_config(temp_dir, Engine.POSTGRES, mode=BackupMode.INCREMENTAL)
    destination = MemoryDestination("s3", fail_put=lambda key: key.startswith("_state/"))

    async def tables(profile, columns):
        return [TrackedTable("public", "users", "updated_at")]

    runner = FakeProcessRunner(lambda cmd: b"id,updated_at\n1,2025-01-02\n")
    tool = PostgresCaptureTool(runner, table_provider=tables, clock=lambda: RUN_AT)

    with pytest.raises(StateIOError):
        await run_backup(
            config,
            runner=runner,
            destinations={"s3": destination},
            capture_tool=tool,
            now=RUN_AT,
        )

    # Artifacts were uploaded before the cursor save was attempted
    assert "shop_pg_incremental_20250102_030405.public.users.csv" in destination.objects
    assert "shop_pg_incremental_20250102_030405.manifest.json" in destination.objects


@pytest.mark.asyncio
async def test_successful_incremental_saves_cursor_on_first_destination(temp_dir: Path):
    config = make_config(temp_dir, Engine.POSTGRES, mode=BackupMode.INCREMENTAL)
    destination = MemoryDestination("s3")

    async def tables(profile, columns):
        return [TrackedTable("public", "users", "updated_at")]

    runner = FakeProcessRunner(lambda cmd: b"id,updated_at\n1,2025-01-02\n")
    tool = PostgresCaptureTool(runner, table_provider=tables, clock=lambda: RUN_AT)

    await run_backup(config, runner=runner, destinations={"s3": destination}, capture_tool=tool, now=RUN_AT)

    saved = json.loads(destination.objects["_state/main_pgsql_state.json"])
    assert saved == {"since_utc": RUN_AT.isoformat()}


# ============================================================================
# Test 4: EXTRACTION FAILURES AND EMPTY RESULTS
# ============================================================================

@pytest.mark.asyncio
async def test_empty_tables_produce_no_artifact_and_failures_are_listed(temp_dir: Path):
    config = make_config(temp_dir, Engine.POSTGRES, mode=BackupMode.INCREMENTAL)

    async def tables(profile, columns):
        return [
            TrackedTable("public", "broken", "updated_at"),
            TrackedTable("public", "header_only", "updated_at"),
            TrackedTable("public", "silent", "updated_at"),
            TrackedTable("public", "users", "updated_at"),
        ]

    def handler(cmd):
        sql = cmd[-1]
        if '"broken"' in sql:
            return CommandError("psql timed out", details={"timed_out": True})
        if '"header_only"' in sql:
            return b"id,updated_at\n"
        if '"silent"' in sql:
            return b""
        return b"id,updated_at\n7,2025-01-02\n"

    runner = FakeProcessRunner(handler, partial_output=b"id,upd")
    tool = PostgresCaptureTool(runner, table_provider=tables, clock=lambda: RUN_AT)

    result = await run_backup(config, runner=runner, capture_tool=tool, now=RUN_AT)

    names = [p.name for p in result.artifacts]
    assert names == ["shop_pg_incremental_20250102_030405.public.users.csv"]
    assert result.failed_tables == ["public.broken"]
    assert not (Path(config.output_dir) / "shop_pg_incremental_20250102_030405.public.broken.csv").exists()

    data = json.loads(result.manifest_path.read_text())
    assert data["failed_tables"] == ["public.broken"]
    assert data["meta"]["tables"] == ["public.users"]
    assert data["files"] == names


# ============================================================================
# Test 5: RETENTION DETERMINISM
# ============================================================================

def test_keep_two_of_five_prunes_three_oldest():
    names = [manifest(t) for t in (T3, T1, T5, T2, T4)]

    assert retention_victims(names, keep=2, max_age_days=None) == [T1, T2, T3]


def test_max_age_all_or_nothing():
    names = [manifest(t) for t in (T1, T2, T3)]
    now = datetime(2025, 1, 3, 0, 0, 0, tzinfo=UTC)

    assert retention_victims(names, keep=None, max_age_days=100, now=now) == []
    assert retention_victims(names, keep=None, max_age_days=0, now=now + timedelta(days=1)) == [T1, T2, T3]


def test_keep_and_age_union():
    names = [manifest(t) for t in (T1, T2, T3, T4, T5)]
    now = datetime(2025, 1, 3, 12, 0, 0, tzinfo=UTC)

    # age: T1, T2 (older than Jan 2 12:00); keep=4: T1
    assert retention_victims(names, keep=4, max_age_days=1, now=now) == [T1, T2]
    # age: T1, T2; keep=2: T1, T2, T3
    assert retention_victims(names, keep=2, max_age_days=1, now=now) == [T1, T2, T3]


def test_unparsable_names_are_ignored():
    names = ["notes.txt", "shop_pg_full_latest.manifest.json", manifest(T1)]

    assert retention_victims(names, keep=0, max_age_days=None) == [T1]


def test_retention_deletes_all_siblings_and_nothing_else(temp_dir: Path):
    out = temp_dir / "out"
    out.mkdir()
    files = []
    for token in (T1, T2, T3):
        for suffix in ("manifest.json", "dump.gz", "globals.sql", "schema-public.dump.gz"):
            files.append(f"shop_pg_full_{token}.{suffix}")
    files += [
        f"shop_pg_schema_{T1}.manifest.json",
        f"shop_pg_schema_{T1}.dump",
        f"other_pg_full_{T1}.manifest.json",
        f"shop_pg_full_{T1}_nightly.dump",
    ]
    for name in files:
        (out / name).write_bytes(b"x")

    report = apply_local_retention(out, "shop_pg_full_", keep=1, max_age_days=None)

    assert report.victims == [T1, T2]
    assert len(report.deleted) == 8
    remaining = sorted(p.name for p in out.iterdir())
    assert f"shop_pg_schema_{T1}.dump" in remaining
    assert f"other_pg_full_{T1}.manifest.json" in remaining
    assert f"shop_pg_full_{T1}_nightly.dump" in remaining
    assert f"shop_pg_full_{T1}.dump.gz" not in remaining


def test_tagged_set_with_same_timestamp_is_its_own_set(temp_dir: Path):
    out = temp_dir / "out"
    out.mkdir()
    for name in (
        f"shop_pg_full_{T1}.manifest.json",
        f"shop_pg_full_{T1}.dump",
        f"shop_pg_full_{T1}_nightly.manifest.json",
        f"shop_pg_full_{T1}_nightly.dump",
    ):
        (out / name).write_bytes(b"x")

    report = apply_local_retention(out, "shop_pg_full_", keep=1, max_age_days=None)

    assert report.victims == [T1]
    assert sorted(p.name for p in out.iterdir()) == [
        f"shop_pg_full_{T1}_nightly.dump",
        f"shop_pg_full_{T1}_nightly.manifest.json",
    ]


def test_dotted_tag_extending_a_victim_tag_keeps_its_files(temp_dir: Path):
    """A set written with tag "a.z" must survive pruning of the set tagged "a"."""
    out = temp_dir / "out"
    out.mkdir()
    for name in (
        f"shop_pg_full_{T1}_a.manifest.json",
        f"shop_pg_full_{T1}_a.dump",
        f"shop_pg_full_{T1}_a.z.manifest.json",
        f"shop_pg_full_{T1}_a.z.dump",
    ):
        (out / name).write_bytes(b"x")

    report = apply_local_retention(out, "shop_pg_full_", keep=1, max_age_days=None)

    assert report.victims == [f"{T1}_a"]
    assert sorted(report.deleted) == [
        f"shop_pg_full_{T1}_a.dump",
        f"shop_pg_full_{T1}_a.manifest.json",
    ]
    assert sorted(p.name for p in out.iterdir()) == [
        f"shop_pg_full_{T1}_a.z.dump",
        f"shop_pg_full_{T1}_a.z.manifest.json",
    ]


def test_tags_never_contain_a_dot(temp_dir: Path):
    profile = make_profile(temp_dir, Engine.POSTGRES, tag="release 1.2")

    assert profile.tag == "release-1-2"
    assert "." not in profile.token


# ============================================================================
# Test 6: DESTINATION RESOLUTION AND TABLE FILTERING
# ============================================================================

def test_explicit_empty_mapping_is_root_and_unmapped_uses_fallback():
    explicit = {"s3": "", "wasabi": "/dr/backups/"}

    assert resolve_destination_path("s3", explicit, "backups/prod") == ""
    assert resolve_destination_path("wasabi", explicit, "backups/prod") == "dr/backups"
    assert resolve_destination_path("gcs", explicit, "/backups/prod/") == "backups/prod"
    assert resolve_destination_path("gcs", {}, "") == ""


def test_exclude_wins_over_include():
    tables = [
        TrackedTable("public", "users", "updated_at"),
        TrackedTable("public", "user_sessions", "updated_at"),
        TrackedTable("audit", "users", "updated_at"),
    ]

    selected = filter_tables(tables, include=["public.user*", "audit.*"], exclude=["*.user_sessions", "audit.users"])

    assert [t.qualified_name for t in selected] == ["public.users"]


# ============================================================================
# Test 7: UPLOAD ORDERING AND ISOLATION
# ============================================================================

@pytest.mark.asyncio
async def test_manifest_uploaded_after_siblings_on_every_destination(temp_dir: Path):
    config = make_config(
        temp_dir,
        Engine.POSTGRES,
        options=CaptureOptions(globals=True, per_schema=True),
        remote_map={"s3": "prod/pg", "wasabi": ""},
    )
    s3 = MemoryDestination("s3")
    wasabi = MemoryDestination("wasabi")

    async def schemas(profile):
        return ["audit", "public"]

    runner = FakeProcessRunner()
    tool = PostgresCaptureTool(runner, schema_provider=schemas)

    result = await run_backup(
        config,
        runner=runner,
        destinations={"s3": s3, "wasabi": wasabi},
        capture_tool=tool,
        now=RUN_AT,
    )

    assert len(result.artifacts) == 4
    for destination in (s3, wasabi):
        assert len(destination.put_order) == 5
        assert destination.put_order[-1].endswith(".manifest.json")
    assert s3.put_order[-1] == "prod/pg/shop_pg_full_20250102_030405.manifest.json"
    assert wasabi.put_order[-1] == "shop_pg_full_20250102_030405.manifest.json"


@pytest.mark.asyncio
async def test_upload_failure_does_not_fail_run(temp_dir: Path):
    config = make_config(temp_dir, Engine.POSTGRES)
    flaky = MemoryDestination("s3", fail_put=lambda key: key.endswith(".dump"))
    healthy = MemoryDestination("local-nas")

    runner = FakeProcessRunner()
    result = await run_backup(
        config,
        runner=runner,
        destinations={"s3": flaky, "local-nas": healthy},
        capture_tool=PostgresCaptureTool(runner),
        now=RUN_AT,
    )

    assert [(f.destination, f.key) for f in result.uploads.failures] == [
        ("s3", "shop_pg_full_20250102_030405.dump")
    ]
    assert "shop_pg_full_20250102_030405.manifest.json" in flaky.objects
    assert sorted(healthy.objects) == [
        "shop_pg_full_20250102_030405.dump",
        "shop_pg_full_20250102_030405.manifest.json",
    ]
