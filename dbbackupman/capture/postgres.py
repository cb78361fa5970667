# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
PostgreSQL Capture - pg_dump snapshots and updated_at incrementals.

Incrementals export, per table, the rows whose last-modified column is
strictly greater than the cutoff. The next cutoff is taken *before*
extraction starts, so a row modified while the run is in progress is
picked up again by the next run instead of being lost. Re-delivery is
possible; loss is not.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Sequence

import aiofiles
import structlog

from dbbackupman.capture import CaptureResult
from dbbackupman.config import BackupMode, CaptureOptions, ConnectionProfile, parse_utc_timestamp
from dbbackupman.errors import explain_invalid_since
from dbbackupman.exceptions import CaptureError, CommandError, ConfigurationError, ExtractionFailedError
from dbbackupman.manifest import Artifact, ArtifactRole
from dbbackupman.process import ProcessRunner, build_env

logger = structlog.get_logger()

# Lookback used when there is neither an override nor a saved cursor
DEFAULT_LOOKBACK = timedelta(hours=24)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")
_LIBPQ_NEEDS_QUOTES = re.compile(r"[\s'\"\\]")


@dataclass(frozen=True)
class TrackedTable:
    """A table exposing a recognized last-modified column."""

    schema: str
    table: str
    column: str

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}"


def safe_name(value: str) -> str:
    return _UNSAFE.sub("-", value)


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def libpq_value(value: str) -> str:
    """Quote a value for a libpq key=value connection string when needed."""
    if value == "" or _LIBPQ_NEEDS_QUOTES.search(value):
        escaped = value.replace("\\", "\\\\").replace("'", "\\'")
        return f"'{escaped}'"
    return value


def libpq_dsn(profile: ConnectionProfile) -> str:
    """Connection string without the password (that goes via PGPASSWORD)."""
    return (
        f"host={libpq_value(profile.host)} port={profile.port} "
        f"dbname={libpq_value(profile.database)} user={libpq_value(profile.username)}"
    )


def resolve_cutoff(
    override: str | None,
    cursor: Mapping[str, Any] | None,
    now: datetime,
) -> datetime:
    """
    Decide the lower bound for an incremental extraction.

    Precedence: explicit override, then the saved cursor, then now - 24h.

    Raises:
        ConfigurationError: If the override is not an ISO-8601 timestamp
    """
    if override:
        try:
            return parse_utc_timestamp(override)
        except ValueError as e:
            raise ConfigurationError(explain_invalid_since(override)) from e

    since = (cursor or {}).get("since_utc")
    if since:
        try:
            return parse_utc_timestamp(str(since))
        except ValueError:
            logger.warning("timestamp_cursor_invalid", since_utc=since)

    return now.astimezone(UTC) - DEFAULT_LOOKBACK


def _glob_to_regex(pattern: str) -> "re.Pattern[str]":
    # '*' stays inside one component; everything else is literal
    parts = [re.escape(chunk) for chunk in pattern.split("*")]
    return re.compile("^" + "[^.]*".join(parts) + "$", re.IGNORECASE)


def match_table_pattern(schema: str, table: str, patterns: Sequence[str]) -> bool:
    """
    Check a table against ``schema.table`` glob patterns.

    A pattern without a dot applies to every schema. ``*`` matches any run
    of characters within one component; matching is case-insensitive.
    """
    for pattern in patterns:
        if "." in pattern:
            schema_pattern, table_pattern = pattern.split(".", 1)
        else:
            schema_pattern, table_pattern = "*", pattern
        if _glob_to_regex(schema_pattern).match(schema) and _glob_to_regex(table_pattern).match(table):
            return True
    return False


def filter_tables(
    tables: Sequence[TrackedTable],
    include: Sequence[str],
    exclude: Sequence[str],
) -> List[TrackedTable]:
    """Apply the include filter, then the exclude filter (exclude always wins)."""
    selected = list(tables)
    if include:
        selected = [t for t in selected if match_table_pattern(t.schema, t.table, include)]
    if exclude:
        selected = [t for t in selected if not match_table_pattern(t.schema, t.table, exclude)]
    return selected


def filter_schemas(schemas: Sequence[str], include: Sequence[str], exclude: Sequence[str]) -> List[str]:
    selected = list(schemas)
    if include:
        selected = [s for s in selected if s in include]
    if exclude:
        selected = [s for s in selected if s not in exclude]
    return selected


async def _connect(profile: ConnectionProfile) -> Any:
    import asyncpg

    try:
        return await asyncpg.connect(
            host=profile.host,
            port=profile.port,
            user=profile.username,
            password=profile.password or None,
            database=profile.database,
        )
    except (asyncpg.PostgresError, OSError) as e:
        raise CaptureError(
            f"Failed to connect to PostgreSQL: {e}",
            details={"host": profile.host, "port": profile.port, "user": profile.username},
        ) from e


async def fetch_tracked_tables(profile: ConnectionProfile, columns: Sequence[str]) -> List[TrackedTable]:
    """
    List ordinary and partitioned tables with a recognized last-modified column.

    When a table has several candidate columns, the first one in
    ``columns`` wins.
    """
    import asyncpg

    conn = await _connect(profile)
    try:
        rows = await conn.fetch(
            """
            SELECT n.nspname AS schema_name, c.relname AS table_name, a.attname AS column_name
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            JOIN pg_attribute a ON a.attrelid = c.oid
            WHERE c.relkind IN ('r', 'p')
              AND NOT c.relispartition
              AND n.nspname NOT IN ('pg_catalog', 'information_schema')
              AND n.nspname NOT LIKE 'pg_toast%'
              AND a.attnum > 0
              AND NOT a.attisdropped
              AND a.attname = ANY($1::text[])
            ORDER BY n.nspname, c.relname
            """,
            list(columns),
        )
    except asyncpg.PostgresError as e:
        raise CaptureError(f"Failed to list tables: {e}", details={"database": profile.database}) from e
    finally:
        await conn.close()

    priority = {name: i for i, name in enumerate(columns)}
    chosen: Dict[tuple, str] = {}
    for row in rows:
        key = (row["schema_name"], row["table_name"])
        column = row["column_name"]
        if key not in chosen or priority[column] < priority[chosen[key]]:
            chosen[key] = column

    return [TrackedTable(schema, table, column) for (schema, table), column in chosen.items()]


async def fetch_schemas(profile: ConnectionProfile) -> List[str]:
    """List user schemas (system schemas excluded)."""
    import asyncpg

    conn = await _connect(profile)
    try:
        rows = await conn.fetch(
            """
            SELECT schema_name FROM information_schema.schemata
            WHERE schema_name NOT IN ('pg_catalog', 'information_schema')
              AND schema_name NOT LIKE 'pg_toast%'
              AND schema_name NOT LIKE 'pg_temp%'
            ORDER BY schema_name
            """
        )
    except asyncpg.PostgresError as e:
        raise CaptureError(f"Failed to list schemas: {e}", details={"database": profile.database}) from e
    finally:
        await conn.close()

    return [row["schema_name"] for row in rows]


async def _has_rows(path) -> bool:
    """True when a CSV export holds more than its header line."""
    async with aiofiles.open(path, "rb") as f:
        header = await f.readline()
        if not header:
            return False
        return bool(await f.read(1))


TableProvider = Callable[[ConnectionProfile, Sequence[str]], Awaitable[List[TrackedTable]]]
SchemaProvider = Callable[[ConnectionProfile], Awaitable[List[str]]]


class PostgresCaptureTool:
    """pg_dump snapshots and updated_at CSV incrementals."""

    def __init__(
        self,
        runner: ProcessRunner,
        table_provider: TableProvider | None = None,
        schema_provider: SchemaProvider | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.runner = runner
        self.table_provider = table_provider or fetch_tracked_tables
        self.schema_provider = schema_provider or fetch_schemas
        self.clock = clock or (lambda: datetime.now(UTC))

    def required_tools(self, profile: ConnectionProfile, mode: BackupMode, options: CaptureOptions) -> List[str]:
        if mode == BackupMode.INCREMENTAL:
            return [profile.tools.psql]
        tools = [profile.tools.pg_dump]
        if options.globals:
            tools.append(profile.tools.pg_dumpall)
        return tools

    async def capture(
        self,
        profile: ConnectionProfile,
        mode: BackupMode,
        options: CaptureOptions,
        prior_state: Mapping[str, Any],
    ) -> CaptureResult:
        if mode == BackupMode.INCREMENTAL:
            return await self._capture_incremental(profile, options, prior_state)
        return await self._dump(profile, mode, options)

    def _env(self, profile: ConnectionProfile) -> Dict[str, str]:
        extra = {"PGPASSWORD": profile.password} if profile.password else {}
        return build_env(extra)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def _dump(self, profile: ConnectionProfile, mode: BackupMode, options: CaptureOptions) -> CaptureResult:
        dsn = libpq_dsn(profile)
        env = self._env(profile)
        artifacts: List[Artifact] = []

        path = profile.artifact_path(mode, "dump")
        path.parent.mkdir(parents=True, exist_ok=True)
        cmd = [profile.tools.pg_dump, "--format=custom", "--file", str(path), f"--dbname={dsn}"]
        if mode == BackupMode.SCHEMA:
            cmd.append("--schema-only")
        if options.no_owner:
            cmd.append("--no-owner")

        try:
            await self.runner.run(cmd, env=env)
        except CommandError as e:
            path.unlink(missing_ok=True)
            raise CaptureError(
                f"pg_dump failed for {profile.database}: {e.message}",
                details=e.details,
            ) from e

        artifacts.append(Artifact(path, ArtifactRole.DUMP))
        logger.info("dump_complete", engine="pgsql", mode=mode.value, path=str(path))

        globals_written = False
        if options.globals:
            globals_written = await self._dump_globals(profile, mode, dsn, env, artifacts)

        schemas: List[str] = []
        if options.per_schema:
            schemas = await self._dump_schemas(profile, mode, options, dsn, env, artifacts)

        return CaptureResult(
            artifacts=artifacts,
            meta={
                "dump_type": "pg_dump",
                "schema_only": mode == BackupMode.SCHEMA,
                "globals": globals_written,
                "schemas": schemas,
            },
        )

    async def _dump_globals(self, profile, mode, dsn, env, artifacts) -> bool:
        path = profile.artifact_path(mode, "globals.sql")
        try:
            await self.runner.run_to_file([profile.tools.pg_dumpall, "-g", f"--dbname={dsn}"], path, env=env)
        except CommandError as e:
            # Roles/tablespaces often need superuser; the main dump is still usable
            path.unlink(missing_ok=True)
            logger.warning("globals_dump_failed", error=e.message)
            return False

        artifacts.append(Artifact(path, ArtifactRole.GLOBALS))
        return True

    async def _dump_schemas(self, profile, mode, options, dsn, env, artifacts) -> List[str]:
        try:
            schemas = await self.schema_provider(profile)
        except CaptureError as e:
            logger.warning("schema_listing_failed", error=e.message)
            return []

        schemas = filter_schemas(schemas, options.schema_include, options.schema_exclude)
        dumped = []
        for schema in schemas:
            path = profile.artifact_path(mode, f"schema-{safe_name(schema)}.dump")
            cmd = [
                profile.tools.pg_dump,
                "--format=custom",
                "--file",
                str(path),
                "-n",
                schema,
                f"--dbname={dsn}",
            ]
            if mode == BackupMode.SCHEMA:
                cmd.append("--schema-only")
            if options.no_owner:
                cmd.append("--no-owner")

            try:
                await self.runner.run(cmd, env=env)
            except CommandError as e:
                path.unlink(missing_ok=True)
                logger.warning("schema_dump_failed", schema=schema, error=e.message)
                continue

            artifacts.append(Artifact(path, ArtifactRole.SCHEMA_DUMP))
            dumped.append(schema)

        return dumped

    # ------------------------------------------------------------------
    # Incrementals
    # ------------------------------------------------------------------

    async def _capture_incremental(
        self,
        profile: ConnectionProfile,
        options: CaptureOptions,
        prior_state: Mapping[str, Any],
    ) -> CaptureResult:
        now = self.clock()
        cutoff = resolve_cutoff(options.since, prior_state, now)
        # Taken before extraction so concurrent writes land in the next window
        next_since = now.astimezone(UTC)

        tables = await self.table_provider(profile, options.updated_at_columns)
        tables = filter_tables(tables, options.table_include, options.table_exclude)

        logger.info(
            "incremental_extraction_started",
            tables=len(tables),
            since_utc=cutoff.isoformat(),
        )

        dsn = libpq_dsn(profile)
        env = self._env(profile)
        artifacts: List[Artifact] = []
        extracted: List[str] = []
        failed: List[str] = []

        for table in tables:
            try:
                path = await self._extract_table(profile, table, cutoff, dsn, env)
            except ExtractionFailedError as e:
                logger.error(
                    "table_extraction_failed",
                    table=table.qualified_name,
                    error=e.message,
                )
                failed.append(table.qualified_name)
                continue

            if path is not None:
                artifacts.append(Artifact(path, ArtifactRole.INCREMENTAL_TABLE_CSV))
                extracted.append(table.qualified_name)

        logger.info(
            "incremental_extraction_complete",
            extracted=len(extracted),
            failed=len(failed),
        )

        return CaptureResult(
            artifacts=artifacts,
            meta={
                "incremental_type": "updated_at",
                "since_utc": cutoff.isoformat(),
                "next_since_utc": next_since.isoformat(),
                "tables": extracted,
                "failed_tables": failed,
            },
            next_cursor={"since_utc": next_since.isoformat()},
            failed_tables=failed,
        )

    async def _extract_table(self, profile, table: TrackedTable, cutoff: datetime, dsn: str, env):
        """
        Export one table's changed rows to CSV.

        Returns:
            Path of the CSV, or None when no rows changed

        Raises:
            ExtractionFailedError: If psql fails or times out
        """
        path = profile.artifact_path(
            BackupMode.INCREMENTAL,
            f"{safe_name(table.schema)}.{safe_name(table.table)}.csv",
        )
        literal = cutoff.isoformat().replace("'", "''")
        sql = (
            f"COPY (SELECT * FROM {quote_ident(table.schema)}.{quote_ident(table.table)} "
            f"WHERE {quote_ident(table.column)} > '{literal}'::timestamptz) "
            "TO STDOUT WITH CSV HEADER"
        )
        cmd = [profile.tools.psql, "--no-align", "--tuples-only", f"--dbname={dsn}", "-c", sql]

        try:
            await self.runner.run_to_file(cmd, path, env=env)
        except CommandError as e:
            path.unlink(missing_ok=True)
            raise ExtractionFailedError(
                f"Extraction failed for {table.qualified_name}: {e.message}",
                details={"table": table.qualified_name, **e.details},
            ) from e

        if not await _has_rows(path):
            path.unlink(missing_ok=True)
            return None

        return path


__all__ = [
    "TrackedTable",
    "PostgresCaptureTool",
    "resolve_cutoff",
    "match_table_pattern",
    "filter_tables",
    "fetch_tracked_tables",
    "fetch_schemas",
    "libpq_dsn",
]
