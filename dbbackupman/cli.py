# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackupman command line.

    dbbackupman --driver pgsql --database shop --mode incremental \\
        --disks s3,wasabi --remote-map 's3:prod/pg,wasabi:' --retention-keep 14

Options override the DBBACKUP_* environment (see dbbackupman.env).
Destinations named in --disks are defined through the environment:
DBBACKUP_DEST_<NAME>_BUCKET (S3) or DBBACKUP_DEST_<NAME>_ROOT (directory).
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List

import structlog

from dbbackupman import __version__
from dbbackupman.exceptions import ConfigurationError, DbBackupError


def add_verbosity_args(parser: argparse.ArgumentParser) -> None:
    """Add verbosity-related arguments to a parser."""
    group = parser.add_argument_group("Output options")
    group.add_argument("-v", "--verbose", action="store_true", help="Enable verbose output")
    group.add_argument("-q", "--quiet", action="store_true", help="Suppress non-essential output")
    group.add_argument("--debug", action="store_true", help="Enable debug output")
    group.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines")


def get_log_level(args: argparse.Namespace) -> str:
    if getattr(args, "debug", False) or getattr(args, "verbose", False):
        return "DEBUG"
    elif getattr(args, "quiet", False):
        return "WARNING"
    else:
        return "INFO"


def configure_logging(level: str, json_logs: bool = False) -> None:
    """Configure structlog for command-line use (logs go to stderr)."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dbbackupman",
        description="Database backups with incrementals, uploads and retention",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    add_verbosity_args(parser)
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")

    conn = parser.add_argument_group("Connection")
    conn.add_argument("--connection", help="Logical connection name (keys the saved cursor)")
    conn.add_argument("--driver", help="pgsql | mysql (aliases: postgres, mariadb)")
    conn.add_argument("--database", help="Database to back up")
    conn.add_argument("--host", help="Server host")
    conn.add_argument("--port", type=int, help="Server port")
    conn.add_argument("--user", dest="username", help="Login user (password via DBBACKUP_PASSWORD)")

    run = parser.add_argument_group("Run")
    run.add_argument("--mode", choices=["full", "schema", "incremental"], help="Backup mode (default: full)")
    run.add_argument("--out", help="Local output directory (default: ./db-backups)")
    run.add_argument("--gzip", action="store_true", help="gzip outputs")
    run.add_argument("--compression", choices=["none", "gzip", "zstd"], help="Compression codec")
    run.add_argument("--tag", help="Tag appended to artifact names")
    run.add_argument("--timeout", type=float, help="Seconds allowed per external command")
    run.add_argument("--skip-tool-check", action="store_true", help="Do not preflight dump binaries")

    pg = parser.add_argument_group("PostgreSQL")
    pg.add_argument("--per-schema", action="store_true", help="Also dump each schema separately")
    pg.add_argument("--include", help="CSV schemas for --per-schema")
    pg.add_argument("--exclude", help="CSV schemas to skip for --per-schema")
    pg.add_argument("--globals", action="store_true", help="Dump roles/tablespaces (pg_dumpall -g)")
    pg.add_argument("--no-owner", action="store_true", help="Omit ownership from dumps")
    pg.add_argument("--since", help="Incremental: ISO-8601 cutoff overriding the saved cursor")
    pg.add_argument("--pg-csv-include", help="Incremental: CSV schema.table patterns")
    pg.add_argument("--pg-csv-exclude", help="Incremental: CSV schema.table patterns")
    pg.add_argument("--updated-at-columns", help="Incremental: CSV last-modified columns, in priority order")

    up = parser.add_argument_group("Uploads, state and retention")
    up.add_argument("--disks", help="CSV destination names")
    up.add_argument("--remote-path", help="Fallback base path for destinations without a mapping")
    up.add_argument("--remote-map", help="JSON or CSV 'name:path' pairs; '' maps to the root")
    up.add_argument("--state-disk", help="Where to store the cursor (default: first destination)")
    up.add_argument("--state-path", help="Base path for the cursor (default: {path}/_state)")
    up.add_argument("--retention-keep", type=int, help="Keep the last N sets")
    up.add_argument("--retention-days", type=int, help="Delete sets older than D days")
    up.add_argument("--max-concurrent-uploads", type=int, help="Parallel uploads per destination (default: 4)")

    return parser


def build_config_from_args(args: argparse.Namespace, environ=None):
    """Layer command-line options over the environment configuration."""
    from dbbackupman import builder
    from dbbackupman.config import Engine
    from dbbackupman.env import (
        destination_from_env,
        config_dict_from_env,
        parse_csv,
        parse_mode,
        parse_remote_map,
    )
    from dbbackupman.errors import explain_missing_database_env

    env = os.environ if environ is None else environ
    config = config_dict_from_env(env)

    if args.driver:
        config["engine"] = Engine.parse(args.driver)
    if args.database:
        config["database"] = args.database
    if args.host or args.port:
        config = builder.with_server(config, args.host or config["host"], args.port or config["port"])
    if args.username:
        config = builder.with_credentials(config, args.username, config["password"])

    if not config["database"] or config["engine"] is None:
        raise ConfigurationError(explain_missing_database_env())

    if args.connection:
        config["connection_name"] = args.connection
    elif not config["connection_name"]:
        config["connection_name"] = config["engine"].value

    if args.mode:
        config["mode"] = parse_mode(args.mode)
    if args.out:
        config = builder.with_output_dir(config, args.out)
    if args.compression:
        config = builder.with_compression(config, args.compression)
    elif args.gzip:
        config = builder.with_gzip(config)
    if args.tag:
        config = builder.with_tag(config, args.tag)
    if args.timeout:
        config = builder.with_command_timeout(config, args.timeout)
    if args.skip_tool_check:
        config = builder.skip_tool_check(config)

    options = {}
    if args.per_schema:
        options["per_schema"] = True
    if args.include:
        options["schema_include"] = parse_csv(args.include)
    if args.exclude:
        options["schema_exclude"] = parse_csv(args.exclude)
    if args.globals:
        options["globals"] = True
    if args.no_owner:
        options["no_owner"] = True
    if args.since:
        options["since"] = args.since
    if args.pg_csv_include:
        options["table_include"] = parse_csv(args.pg_csv_include)
    if args.pg_csv_exclude:
        options["table_exclude"] = parse_csv(args.pg_csv_exclude)
    if args.updated_at_columns:
        options["updated_at_columns"] = parse_csv(args.updated_at_columns)
    if options:
        config = builder.with_capture_options(config, **options)

    if args.disks is not None:
        config["destinations"] = []
        for name in parse_csv(args.disks):
            config = destination_from_env(config, name, env)
    if args.remote_path is not None:
        config = builder.with_remote_path(config, args.remote_path)
    if args.remote_map is not None:
        config["remote_map"] = parse_remote_map(args.remote_map)
    if args.state_disk:
        config = builder.store_state_on(config, args.state_disk, args.state_path or config["state_path"])
    elif args.state_path:
        config["state_path"] = args.state_path
    if args.retention_keep is not None:
        config = builder.keep_last(config, args.retention_keep)
    if args.retention_days is not None:
        config = builder.delete_older_than(config, args.retention_days)
    if args.max_concurrent_uploads is not None:
        config = builder.with_max_concurrent_uploads(config, args.max_concurrent_uploads)

    return builder.build_config(config)


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for the dbbackupman CLI.

    Returns:
        Exit code (0 success, 1 backup failure, 2 configuration error)
    """
    from dbbackupman.core import run_backup

    parser = create_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    configure_logging(get_log_level(args), json_logs=args.json_logs)
    logger = structlog.get_logger()

    try:
        config = build_config_from_args(args)
    except ConfigurationError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    try:
        result = asyncio.run(run_backup(config))
    except ConfigurationError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    except DbBackupError as e:
        logger.error("backup_aborted", error_type=type(e).__name__, error=str(e))
        return 1

    if not args.quiet:
        print("Backup complete.")
        for path in result.artifacts + [result.manifest_path]:
            print(f"  {path}")
        for failure in result.uploads.failures:
            print(f"  upload failed: {failure.destination}:{failure.key}", file=sys.stderr)
        for table in result.failed_tables:
            print(f"  table failed: {table}", file=sys.stderr)

    return 0


if __name__ == "__main__":
    sys.exit(main())
