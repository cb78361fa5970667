# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackupman Builder - Functional builder pattern for configuration.

This module provides pure functions for building BackupConfig objects.
Each function takes a config dict and returns a new dict with the
modification applied (immutable updates).
"""

from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List

from dbbackupman.config import (
    BackupConfig,
    BackupMode,
    CaptureOptions,
    Compression,
    DestinationConfig,
    DestinationKind,
    Engine,
    ToolPaths,
)


# Type alias for builder functions
ConfigDict = Dict[str, Any]
BuilderFunc = Callable[[ConfigDict], ConfigDict]


def create_empty_config() -> ConfigDict:
    """
    Create an initial empty configuration dictionary.

    Returns:
        Dict with default values for all configuration fields
    """
    return {
        "connection_name": "",
        "engine": None,
        "database": "",
        "host": "127.0.0.1",
        "port": None,
        "username": "",
        "password": None,
        "mode": BackupMode.FULL,
        "output_dir": Path("./db-backups"),
        "tools": ToolPaths(),
        "compression": Compression.NONE,
        "tag": None,
        "options": CaptureOptions(),
        "destinations": [],
        "remote_path": "",
        "remote_map": {},
        "state_disk": None,
        "state_path": None,
        "retention_keep": None,
        "retention_days": None,
        "max_concurrent_uploads": 4,
        "command_timeout": None,
        "check_tools": True,
    }


def with_connection(
    config: ConfigDict,
    name: str,
    engine: Engine | str,
    database: str,
) -> ConfigDict:
    """
    Set the logical connection, its engine and the database to back up.

    Args:
        config: Current configuration dictionary
        name: Connection name (keys the saved cursor)
        engine: 'pgsql' / 'mysql' (aliases accepted)
        database: Database name

    Returns:
        New configuration dictionary with the connection set
    """
    return {
        **config,
        "connection_name": name,
        "engine": Engine.parse(engine),
        "database": database,
    }


def with_server(config: ConfigDict, host: str, port: int | None = None) -> ConfigDict:
    return {**config, "host": host, "port": port}


def with_credentials(config: ConfigDict, username: str, password: str | None = None) -> ConfigDict:
    return {**config, "username": username, "password": password}


def full_mode(config: ConfigDict) -> ConfigDict:
    """Schema and data snapshot (the default)."""
    return {**config, "mode": BackupMode.FULL}


def schema_mode(config: ConfigDict) -> ConfigDict:
    """Schema-only snapshot."""
    return {**config, "mode": BackupMode.SCHEMA}


def incremental_mode(config: ConfigDict) -> ConfigDict:
    """Changes since the saved cursor."""
    return {**config, "mode": BackupMode.INCREMENTAL}


def with_output_dir(config: ConfigDict, output_dir: Path | str) -> ConfigDict:
    return {**config, "output_dir": Path(output_dir)}


def with_tools(config: ConfigDict, **paths: str) -> ConfigDict:
    """
    Override executable paths (pg_dump, pg_dumpall, psql, mysqldump, mysqlbinlog).

    Raises:
        ValueError: If an unknown tool name is given
    """
    valid = set(ToolPaths.__dataclass_fields__)
    unknown = sorted(set(paths) - valid)
    if unknown:
        raise ValueError(f"Unknown tools: {unknown}, expected some of {sorted(valid)}")
    return {**config, "tools": replace(config["tools"], **paths)}


def with_compression(config: ConfigDict, codec: Compression | str) -> ConfigDict:
    if isinstance(codec, str):
        codec = Compression(codec.lower())
    return {**config, "compression": codec}


def with_gzip(config: ConfigDict) -> ConfigDict:
    return with_compression(config, Compression.GZIP)


def with_tag(config: ConfigDict, tag: str | None) -> ConfigDict:
    """
    Set a free-text tag appended to the retention token of every artifact.

    The tag is sanitized when the run starts.
    """
    return {**config, "tag": tag}


def with_capture_options(config: ConfigDict, **options: Any) -> ConfigDict:
    """
    Update capture options (per_schema, globals, since, table_include, ...).

    Args:
        config: Current configuration dictionary
        **options: CaptureOptions fields to override

    Returns:
        New configuration dictionary with options updated
    """
    return {**config, "options": replace(config["options"], **options)}


def with_destination(config: ConfigDict, destination: DestinationConfig) -> ConfigDict:
    """
    Add an upload destination.

    Args:
        config: Current configuration dictionary
        destination: Destination settings

    Returns:
        New configuration dictionary with the destination added
    """
    return {**config, "destinations": list(config["destinations"]) + [destination]}


def upload_to_s3(
    config: ConfigDict,
    name: str,
    bucket: str,
    *,
    region: str = "us-east-1",
    endpoint_url: str | None = None,
) -> ConfigDict:
    return with_destination(
        config,
        DestinationConfig(
            name=name,
            kind=DestinationKind.S3,
            bucket=bucket,
            region=region,
            endpoint_url=endpoint_url,
        ),
    )


def upload_to_directory(config: ConfigDict, name: str, root: Path | str) -> ConfigDict:
    return with_destination(
        config,
        DestinationConfig(name=name, kind=DestinationKind.LOCAL, root=Path(root)),
    )


def with_remote_path(config: ConfigDict, path: str) -> ConfigDict:
    """Base path used on destinations that have no explicit mapping."""
    return {**config, "remote_path": path}


def map_destination_path(config: ConfigDict, name: str, path: str) -> ConfigDict:
    """
    Map a destination to its own base path.

    An empty path means the destination root and wins over remote_path.
    """
    return {**config, "remote_map": {**config["remote_map"], name: path}}


def store_state_on(config: ConfigDict, disk: str, path: str | None = None) -> ConfigDict:
    """
    Choose where the incremental cursor is stored.

    Args:
        config: Current configuration dictionary
        disk: 'local' or a destination name
        path: Base path on the destination (default: {destination path}/_state)

    Returns:
        New configuration dictionary with the state location set
    """
    return {**config, "state_disk": disk, "state_path": path}


def keep_last(config: ConfigDict, count: int) -> ConfigDict:
    """
    Keep only the N most recent backup sets per database, engine and mode.

    Raises:
        ValueError: If count is negative
    """
    if count < 0:
        raise ValueError(f"keep count must be >= 0, got {count}")
    return {**config, "retention_keep": count}


def delete_older_than(config: ConfigDict, days: int) -> ConfigDict:
    """
    Delete backup sets older than the given number of days.

    Raises:
        ValueError: If days is negative
    """
    if days < 0:
        raise ValueError(f"retention days must be >= 0, got {days}")
    return {**config, "retention_days": days}


def with_max_concurrent_uploads(config: ConfigDict, max_uploads: int) -> ConfigDict:
    if max_uploads < 1:
        raise ValueError(f"max_concurrent_uploads must be >= 1, got {max_uploads}")
    return {**config, "max_concurrent_uploads": max_uploads}


def with_command_timeout(config: ConfigDict, seconds: float | None) -> ConfigDict:
    return {**config, "command_timeout": seconds}


def skip_tool_check(config: ConfigDict) -> ConfigDict:
    return {**config, "check_tools": False}


def build_config(config_dict: ConfigDict) -> BackupConfig:
    """
    Validate and build an immutable BackupConfig from a configuration dictionary.

    Args:
        config_dict: Configuration dictionary built using builder functions

    Returns:
        Validated, immutable BackupConfig instance

    Raises:
        ConfigurationError: If validation fails
    """
    if config_dict.get("engine") is None:
        from dbbackupman.errors import explain_unsupported_engine
        from dbbackupman.exceptions import ConfigurationError

        raise ConfigurationError(explain_unsupported_engine(None))

    return BackupConfig(**config_dict)


def pipe(*funcs: BuilderFunc) -> BuilderFunc:
    """
    Compose multiple builder functions into a single function.

        config = pipe(
            lambda c: with_connection(c, "main", "pgsql", "shop"),
            incremental_mode,
            lambda c: keep_last(c, 7),
        )(create_empty_config())
    """

    def composed(config: ConfigDict) -> ConfigDict:
        result = config
        for func in funcs:
            result = func(result)
        return result

    return composed


def build_from_steps(*steps: BuilderFunc) -> BackupConfig:
    """
    Build config by applying a sequence of builder functions.

    This is a convenience function that combines pipe() and build_config().
    """
    config = create_empty_config()
    for step in steps:
        config = step(config)
    return build_config(config)


def create_config(
    database: str,
    *,
    engine: str | Engine = "pgsql",
    connection_name: str | None = None,
    host: str = "127.0.0.1",
    port: int | None = None,
    username: str = "",
    password: str | None = None,
    mode: str | BackupMode = "full",
    output_dir: str | Path | None = None,
    compression: str | Compression = "none",
    tag: str | None = None,
    destinations: List[DestinationConfig] | None = None,
    remote_path: str = "",
    remote_map: Dict[str, str] | None = None,
    retention_keep: int | None = None,
    retention_days: int | None = None,
    **kwargs: Any,
) -> BackupConfig:
    """
    Create a backup configuration from simple parameters.

    This is the recommended user-facing API for creating configurations.

    Args:
        database: Database to back up (required)
        engine: 'pgsql' (postgres) or 'mysql' (mariadb)
        connection_name: Logical name keying the cursor (default: engine value)
        host: Server host
        port: Server port (default: engine default)
        username: Login user
        password: Login password (passed to tools via environment)
        mode: 'full', 'schema' or 'incremental'
        output_dir: Local workspace (default: ./db-backups)
        compression: 'none', 'gzip' or 'zstd'
        tag: Free-text tag appended to artifact names
        destinations: Upload destinations
        remote_path: Base path for destinations without a mapping
        remote_map: Per-destination base paths ("" = root)
        retention_keep: Keep the N most recent sets
        retention_days: Delete sets older than D days
        **kwargs: Additional BackupConfig fields (state_disk, options, ...)

    Returns:
        Validated, immutable BackupConfig instance

    Example:
        config = create_config(
            "shop",
            engine="mysql",
            username="backup",
            mode="incremental",
            destinations=[DestinationConfig("s3", bucket="db-backups")],
            remote_map={"s3": "prod/mysql"},
            retention_keep=14,
        )
    """
    from dbbackupman.errors import explain_invalid_mode
    from dbbackupman.exceptions import ConfigurationError

    resolved_engine = Engine.parse(engine)

    config_dict = create_empty_config()
    config_dict = with_connection(
        config_dict,
        connection_name or resolved_engine.value,
        resolved_engine,
        database,
    )
    config_dict = with_server(config_dict, host, port)
    config_dict = with_credentials(config_dict, username, password)

    if isinstance(mode, str):
        try:
            mode = BackupMode(mode.lower())
        except ValueError as exc:
            raise ConfigurationError(explain_invalid_mode(mode)) from exc
    config_dict["mode"] = mode

    if output_dir:
        config_dict = with_output_dir(config_dict, output_dir)

    config_dict = with_compression(config_dict, compression)
    config_dict = with_tag(config_dict, tag)

    for destination in destinations or []:
        config_dict = with_destination(config_dict, destination)

    config_dict = with_remote_path(config_dict, remote_path)
    for name, path in (remote_map or {}).items():
        config_dict = map_destination_path(config_dict, name, path)

    if retention_keep is not None:
        config_dict = keep_last(config_dict, retention_keep)
    if retention_days is not None:
        config_dict = delete_older_than(config_dict, retention_days)

    # Apply any additional kwargs
    for key, value in kwargs.items():
        if key in config_dict:
            config_dict[key] = value

    return build_config(config_dict)
