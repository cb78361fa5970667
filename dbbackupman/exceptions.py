# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackupman Exceptions - Custom exceptions for the dbbackupman package.

Errors that would corrupt resumption correctness (stale cursor, partial
capture, failed state save) are fatal to a run. Per-table extraction and
per-file upload failures are recorded on the run result instead of raised.
"""

from pathlib import Path
from typing import List


class DbBackupError(Exception):
    """Base exception for all dbbackupman errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(DbBackupError):
    """Raised when configuration is invalid or a connection cannot be resolved."""

    pass


class CaptureError(DbBackupError):
    """Raised when a dump or capture cannot be produced."""

    pass


class StaleCursorError(CaptureError):
    """Raised when the saved cursor points at server state that no longer exists."""

    pass


class PartialCaptureError(CaptureError):
    """
    Raised when a multi-step capture aborts partway.

    The artifacts produced before the failure are kept on disk for
    inspection and listed in ``artifacts``. The cursor is not advanced.
    """

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        artifacts: List[Path] | None = None,
    ):
        super().__init__(message, details)
        self.artifacts = list(artifacts or [])


class ExtractionFailedError(CaptureError):
    """Raised when a single table extraction fails (recorded, not fatal)."""

    pass


class CommandError(DbBackupError):
    """Raised when an external program fails or times out."""

    pass


class StorageError(DbBackupError):
    """Raised when a storage destination operation fails."""

    pass


class UploadFailedError(StorageError):
    """Raised when one artifact cannot be uploaded to one destination."""

    pass


class StateIOError(DbBackupError):
    """Raised when cursor state cannot be written to its location."""

    pass


class RetentionError(DbBackupError):
    """Raised when a retention pass cannot list its backup sets."""

    pass
