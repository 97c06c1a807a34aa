"""patchfeed: signed, incremental software updates over HTTP.

A publisher hashes and signs every file of a build and uploads an encrypted
feed; clients fetch the signed manifest, download only the files that
changed, verify each one, and stage the result for installation.

Example:
    >>> from patchfeed import ManifestFetcher, ProgressCounter, load_config
    >>> with ManifestFetcher.from_config(load_config()) as fetcher:
    ...     update = fetcher.find_update("Billing", current_version="2.0.0")
    ...     if update is not None:
    ...         staging = update.download_files("/opt/billing", ProgressCounter())
"""

__version__ = "0.1.0"

from patchfeed.config import UpdateConfig, load_config
from patchfeed.crypto.trust import TrustContext
from patchfeed.errors import PatchfeedError, UpdateFailedError
from patchfeed.fetcher import ManifestFetcher
from patchfeed.files import FileDescriptor
from patchfeed.legacy import LegacyBlobUpdate
from patchfeed.manifest import UpdateManifest
from patchfeed.models import SyncStatus, UpdateStrategy, VersionEntry
from patchfeed.progress import CancellationToken, EmptyProgressReporter, ProgressCounter
from patchfeed.sync import SyncResult

__all__ = [
    "CancellationToken",
    "EmptyProgressReporter",
    "FileDescriptor",
    "LegacyBlobUpdate",
    "ManifestFetcher",
    "PatchfeedError",
    "ProgressCounter",
    "SyncResult",
    "SyncStatus",
    "TrustContext",
    "UpdateConfig",
    "UpdateFailedError",
    "UpdateManifest",
    "UpdateStrategy",
    "VersionEntry",
    "__version__",
    "load_config",
]
