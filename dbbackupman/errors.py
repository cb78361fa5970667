# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for dbbackupman.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""


def explain_missing_database_env() -> str:
    """
    Explain that no database connection was configured.
    """

    return (
        "Database connection is not configured. "
        "Set DATABASE_URL (or DBBACKUP_HOST/DBBACKUP_DATABASE/DBBACKUP_USERNAME) "
        "or pass database=... to create_config()."
    )


def explain_unsupported_engine(value: str | None) -> str:
    """
    Explain that the engine/driver is not supported.
    """

    return (
        f"Unsupported driver: {value!r}. "
        "Expected 'pgsql' (postgres, postgresql) or 'mysql' (mariadb)."
    )


def explain_invalid_mode(value: str | None) -> str:
    """
    Explain that the backup mode is invalid.
    """

    return (
        f"Invalid backup mode: {value!r}. "
        "Expected one of: 'full', 'schema', or 'incremental'."
    )


def explain_invalid_retention_env(name: str, value: str | None) -> str:
    """
    Explain that a retention environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "It must be a non-negative integer."
    )


def explain_invalid_since(value: str | None) -> str:
    """
    Explain that the incremental cutoff override could not be parsed.
    """

    return (
        f"Invalid since value: {value!r}. "
        "Expected an ISO-8601 timestamp such as '2025-01-31T00:00:00+00:00'."
    )


def explain_unknown_destination(name: str) -> str:
    """
    Explain that a destination name has no matching destination settings.
    """

    return (
        f"Destination {name!r} is not configured. "
        "Add it with with_destination()/destinations=[...] or set "
        f"DBBACKUP_DEST_{name.upper()}_BUCKET or DBBACKUP_DEST_{name.upper()}_ROOT."
    )
