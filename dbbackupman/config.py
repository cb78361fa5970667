# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackupman Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation. A run builds one
BackupConfig at the boundary and derives one ConnectionProfile from it;
nothing below the orchestrator looks configuration up on its own.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Dict, List
import re


class Engine(str, Enum):
    """Supported database engine (driver id)."""

    MYSQL = "mysql"  # MySQL / MariaDB, binlog incrementals
    POSTGRES = "pgsql"  # PostgreSQL, updated_at incrementals

    @property
    def abbrev(self) -> str:
        """Short engine name used in artifact filenames."""
        return "pg" if self is Engine.POSTGRES else "my"

    @property
    def default_port(self) -> int:
        return 5432 if self is Engine.POSTGRES else 3306

    @classmethod
    def parse(cls, value: "str | Engine") -> "Engine":
        """Parse a driver name, accepting common aliases."""
        if isinstance(value, Engine):
            return value
        from dbbackupman.errors import explain_unsupported_engine
        from dbbackupman.exceptions import ConfigurationError

        aliases = {
            "pgsql": cls.POSTGRES,
            "postgres": cls.POSTGRES,
            "postgresql": cls.POSTGRES,
            "mysql": cls.MYSQL,
            "mariadb": cls.MYSQL,
        }
        engine = aliases.get((value or "").strip().lower())
        if engine is None:
            raise ConfigurationError(explain_unsupported_engine(value))
        return engine


class BackupMode(str, Enum):
    """What a run produces."""

    FULL = "full"  # Schema and data snapshot
    SCHEMA = "schema"  # Schema-only snapshot
    INCREMENTAL = "incremental"  # Changes since the saved cursor


class Compression(str, Enum):
    """Codec applied to produced artifacts (never to the manifest)."""

    NONE = "none"
    GZIP = "gzip"
    ZSTD = "zstd"

    @property
    def suffix(self) -> str:
        return {"none": "", "gzip": ".gz", "zstd": ".zst"}[self.value]


class DestinationKind(str, Enum):
    """Storage destination backend type."""

    S3 = "s3"
    LOCAL = "local"


_TAG_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")
_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


def sanitize_tag(tag: str | None) -> str | None:
    """Make a free-text tag safe for filenames (runs of other chars become '-')."""
    if not tag or not tag.strip():
        return None
    return _TAG_UNSAFE.sub("-", tag.strip())


def format_run_timestamp(moment: datetime) -> str:
    """Format a run instant as the ``Ymd_His`` filename timestamp (UTC)."""
    return moment.astimezone(UTC).strftime(_TIMESTAMP_FORMAT)


def parse_utc_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 instant into an aware UTC datetime.

    Naive values are taken to be UTC. A trailing 'Z' is accepted.

    Raises:
        ValueError: If the value is not an ISO-8601 timestamp
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


@dataclass(frozen=True)
class ToolPaths:
    """Executable paths for the external dump/export programs."""

    pg_dump: str = "pg_dump"
    pg_dumpall: str = "pg_dumpall"
    psql: str = "psql"
    mysqldump: str = "mysqldump"
    mysqlbinlog: str = "mysqlbinlog"


@dataclass(frozen=True)
class DestinationConfig:
    """A named remote storage location artifacts may be uploaded to."""

    name: str
    kind: DestinationKind = DestinationKind.S3

    # S3 settings
    bucket: str | None = None
    region: str = "us-east-1"
    endpoint_url: str | None = None

    # Local directory settings
    root: Path | None = None

    def __post_init__(self) -> None:
        from dbbackupman.exceptions import ConfigurationError

        if not self.name or self.name == "local":
            raise ConfigurationError(
                f"Invalid destination name: {self.name!r} ('local' is reserved)"
            )
        if self.kind == DestinationKind.S3 and not self.bucket:
            raise ConfigurationError(f"Destination {self.name!r} requires a bucket")
        if self.kind == DestinationKind.LOCAL and self.root is None:
            raise ConfigurationError(f"Destination {self.name!r} requires a root directory")


@dataclass(frozen=True)
class CaptureOptions:
    """
    Options recognized by the capture tools.

    Fields that do not apply to the selected engine or mode are ignored.
    """

    # PostgreSQL snapshots
    no_owner: bool = False
    per_schema: bool = False
    schema_include: List[str] = field(default_factory=list)
    schema_exclude: List[str] = field(default_factory=list)
    globals: bool = False

    # PostgreSQL incrementals
    since: str | None = None  # ISO-8601 override of the saved cursor
    table_include: List[str] = field(default_factory=list)  # schema.table globs
    table_exclude: List[str] = field(default_factory=list)
    updated_at_columns: List[str] = field(default_factory=lambda: ["updated_at"])


@dataclass(frozen=True)
class BackupConfig:
    """
    Immutable configuration for one backup run.

    This configuration is frozen after creation; use with_updates() to
    derive a modified copy.
    """

    # Logical connection name (keys the saved cursor)
    connection_name: str

    # Database engine
    engine: Engine

    # Database to back up
    database: str

    host: str = "127.0.0.1"
    port: int | None = None  # Engine default when unset
    username: str = ""
    password: str | None = None

    # What to produce
    mode: BackupMode = BackupMode.FULL

    # Local output directory (workspace)
    output_dir: Path = field(default_factory=lambda: Path("./db-backups"))

    tools: ToolPaths = field(default_factory=ToolPaths)

    # Artifact compression
    compression: Compression = Compression.NONE

    # Free-text tag appended to the retention token
    tag: str | None = None

    options: CaptureOptions = field(default_factory=CaptureOptions)

    # Upload destinations (all of them receive every artifact)
    destinations: List[DestinationConfig] = field(default_factory=list)

    # Fallback remote base path for destinations not in remote_map
    remote_path: str = ""

    # Per-destination remote base paths; "" means destination root
    remote_map: Dict[str, str] = field(default_factory=dict)

    # Where the incremental cursor lives (default: first destination, else local)
    state_disk: str | None = None
    state_path: str | None = None

    # Retention: keep the N most recent sets and/or drop sets older than D days
    retention_keep: int | None = None
    retention_days: int | None = None

    # Maximum concurrent uploads per destination
    max_concurrent_uploads: int = 4

    # Upper bound in seconds for each external command (None = unbounded)
    command_timeout: float | None = None

    # Run '<tool> --version' for every required binary before capturing
    check_tools: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not self.connection_name:
            errors.append("connection_name is required")

        if not self.database:
            errors.append("database is required")

        if self.port is not None and not (0 < self.port < 65536):
            errors.append(f"port must be 1-65535, got {self.port}")

        if self.retention_keep is not None and self.retention_keep < 0:
            errors.append(f"retention_keep must be >= 0, got {self.retention_keep}")

        if self.retention_days is not None and self.retention_days < 0:
            errors.append(f"retention_days must be >= 0, got {self.retention_days}")

        if self.max_concurrent_uploads < 1:
            errors.append(
                f"max_concurrent_uploads must be >= 1, got {self.max_concurrent_uploads}"
            )

        if self.command_timeout is not None and self.command_timeout <= 0:
            errors.append(f"command_timeout must be > 0, got {self.command_timeout}")

        names = [d.name for d in self.destinations]
        if len(names) != len(set(names)):
            errors.append(f"Duplicate destination names: {names}")

        if self.state_disk and self.state_disk != "local" and self.state_disk not in names:
            errors.append(f"state_disk {self.state_disk!r} is not a configured destination")

        if self.options.since:
            try:
                parse_utc_timestamp(self.options.since)
            except ValueError:
                from dbbackupman.errors import explain_invalid_since

                errors.append(explain_invalid_since(self.options.since))

        if self.mode == BackupMode.INCREMENTAL and not self.options.updated_at_columns:
            errors.append("updated_at_columns must name at least one column")

        if errors:
            from dbbackupman.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def resolved_port(self) -> int:
        return self.port or self.engine.default_port

    @property
    def retention_enabled(self) -> bool:
        return self.retention_keep is not None or self.retention_days is not None

    def with_updates(self, **kwargs) -> "BackupConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import replace

        return replace(self, **kwargs)


@dataclass(frozen=True)
class ConnectionProfile:
    """
    Resolved connection, tool and workspace parameters for one run.

    Created once per invocation and never modified.
    """

    connection_name: str
    engine: Engine
    host: str
    port: int
    database: str
    username: str
    password: str | None
    tools: ToolPaths
    workdir: Path
    timestamp: str  # Ymd_His, UTC
    tag: str | None = None

    @classmethod
    def from_config(cls, config: BackupConfig, now: datetime | None = None) -> "ConnectionProfile":
        moment = now or datetime.now(UTC)
        return cls(
            connection_name=config.connection_name,
            engine=config.engine,
            host=config.host,
            port=config.resolved_port,
            database=config.database,
            username=config.username,
            password=config.password,
            tools=config.tools,
            workdir=Path(config.output_dir),
            timestamp=format_run_timestamp(moment),
            tag=sanitize_tag(config.tag),
        )

    @property
    def token(self) -> str:
        """Retention token shared by every artifact of this run."""
        return f"{self.timestamp}_{self.tag}" if self.tag else self.timestamp

    def family_prefix(self, mode: BackupMode | str) -> str:
        """Filename prefix shared by all runs of this database, engine and mode."""
        mode_value = mode.value if isinstance(mode, BackupMode) else mode
        return f"{self.database}_{self.engine.abbrev}_{mode_value}_"

    def file_base(self, mode: BackupMode | str) -> str:
        """Base filename for this run's artifacts (no extension)."""
        return f"{self.family_prefix(mode)}{self.token}"

    def artifact_path(self, mode: BackupMode | str, suffix: str) -> Path:
        return self.workdir / f"{self.file_base(mode)}.{suffix}"
