"""Enumerations for patchfeed.

This module defines the enum types shared by both update variants to
prevent magic strings.
"""

from enum import Enum


class UpdateStrategy(str, Enum):
    """How an available update is delivered.

    INCREMENTAL manifests list every file and only changed files are
    downloaded; LEGACY_BLOB updates ship the whole tree as one encrypted
    archive.
    """

    INCREMENTAL = "incremental"
    LEGACY_BLOB = "legacy_blob"


class SyncStatus(str, Enum):
    """Terminal states of a download run.

    Example:
        >>> SyncStatus.CANCELLED.is_success()
        False
    """

    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    FAILED = "failed"

    def is_success(self) -> bool:
        return self is SyncStatus.SUCCEEDED
