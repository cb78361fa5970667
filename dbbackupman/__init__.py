# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackupman - Database backup coordinator for PostgreSQL and MySQL.

Produces full/schema snapshots or gap-free incremental captures (binary
log for MySQL, last-modified timestamps for PostgreSQL), fans the
artifacts out to named storage destinations, and prunes old backup sets
under a keep-N / max-age policy. Package name: dbbackupman.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from dbbackupman.builder import create_config
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

# Core function
from dbbackupman.core import BackupResult, run_backup

# Environment-based configuration
from dbbackupman.env import create_config_from_env

__all__ = [
    # Version
    "__version__",
    # Configuration
    "create_config",
    "create_config_from_env",
    "BackupConfig",
    "BackupMode",
    "CaptureOptions",
    "Compression",
    "DestinationConfig",
    "DestinationKind",
    "Engine",
    "ToolPaths",
    # Orchestration
    "run_backup",
    "BackupResult",
]
