"""Staged download runs and their outcome.

Both update variants download into a brand-new staging directory and hand
it to the caller only when everything verified. A run ends in exactly one
of three states:

- SUCCEEDED: ``staging_dir`` holds the verified update, ready for promotion
- CANCELLED: the user cancelled; the staging directory is gone
- FAILED: anything else went wrong; the staging directory is gone and
  ``error`` wraps the cause
"""

from __future__ import annotations

import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from patchfeed.errors import UpdateFailedError
from patchfeed.models.enums import SyncStatus
from patchfeed.observability import get_logger
from patchfeed.progress import EmptyProgressReporter, OperationCancelled, ProgressReporter
from patchfeed.utils.paths import remove_tree

logger = get_logger(__name__)

STAGING_PREFIX = "patchfeed-"

StagedOperation = Callable[[Path, ProgressReporter], None]


@dataclass(frozen=True)
class SyncResult:
    """Tagged outcome of a download run.

    Attributes:
        status: Which terminal state the run reached.
        staging_dir: The verified update (SUCCEEDED only).
        error: The wrapped failure (FAILED only).
    """

    status: SyncStatus
    staging_dir: Path | None = None
    error: UpdateFailedError | None = None

    @classmethod
    def succeeded(cls, staging_dir: Path) -> SyncResult:
        return cls(SyncStatus.SUCCEEDED, staging_dir=staging_dir)

    @classmethod
    def cancelled(cls) -> SyncResult:
        return cls(SyncStatus.CANCELLED)

    @classmethod
    def failed(cls, error: UpdateFailedError) -> SyncResult:
        return cls(SyncStatus.FAILED, error=error)

    @property
    def ok(self) -> bool:
        return self.status.is_success()

    def unwrap(self) -> Path | None:
        """The staging path, ``None`` if cancelled.

        Raises:
            UpdateFailedError: If the run failed.
        """
        if self.status is SyncStatus.FAILED:
            assert self.error is not None
            raise self.error
        return self.staging_dir


def allocate_staging_dir() -> Path:
    """Create a fresh, empty staging directory under the system temp dir."""
    return Path(tempfile.mkdtemp(prefix=STAGING_PREFIX))


def run_staged(
    operation: StagedOperation,
    progress: ProgressReporter | None = None,
    *,
    product_name: str = "",
) -> SyncResult:
    """Run ``operation(staging_dir, progress)`` in a fresh staging directory.

    The directory is deleted unless the operation completes. An error seen
    after the user cancelled (e.g. a stream closed under the transfer) is
    reported as CANCELLED, not FAILED.
    """
    progress = progress or EmptyProgressReporter()
    staging = allocate_staging_dir()
    logger.debug("patchfeed.sync.staging_allocated", product=product_name, staging_dir=str(staging))
    try:
        operation(staging, progress)
    except OperationCancelled:
        remove_tree(staging)
        logger.info("patchfeed.sync.cancelled", product=product_name)
        return SyncResult.cancelled()
    except Exception as e:
        remove_tree(staging)
        if progress.was_canceled:
            logger.info("patchfeed.sync.cancelled", product=product_name, error=type(e).__name__)
            return SyncResult.cancelled()
        logger.warning(
            "patchfeed.sync.failed",
            product=product_name,
            error=str(e),
            error_type=type(e).__name__,
        )
        return SyncResult.failed(UpdateFailedError(e))

    logger.info("patchfeed.sync.completed", product=product_name, staging_dir=str(staging))
    return SyncResult.succeeded(staging)
