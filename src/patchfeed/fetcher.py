"""Checking the update server for a newer release.

Example:
    >>> config = load_config()
    >>> with ManifestFetcher.from_config(config) as fetcher:
    ...     update = fetcher.find_update("Billing", current_version="2.0.0")
    ...     if update is not None:
    ...         print(update.get_changes("2.0.0"))
    ...         staging = update.download_files(install_dir, ProgressCounter())
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Union

import httpx
from packaging.version import Version

from patchfeed.crypto.trust import BlobTransform, TrustContext
from patchfeed.errors import PatchfeedError
from patchfeed.legacy import LegacyBlobUpdate, is_legacy_document
from patchfeed.manifest import UpdateManifest, coerce_version, parse_document
from patchfeed.observability import get_logger
from patchfeed.transport.http import DEFAULT_CHUNK_SIZE, DEFAULT_TIMEOUT, UpdateTransport

if TYPE_CHECKING:
    from patchfeed.config import UpdateConfig

logger = get_logger(__name__)

MANIFEST_SUFFIX = ".xml"

AvailableUpdate = Union[UpdateManifest, LegacyBlobUpdate]


def manifest_path(product_name: str) -> str:
    return f"{product_name}{MANIFEST_SUFFIX}"


class ManifestFetcher:
    """Fetches and verifies update manifests from one update feed.

    Owns the HTTP client; close it with ``close()`` or use the fetcher as a
    context manager.
    """

    def __init__(
        self,
        base_uri: str,
        trust: TrustContext,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        """Initialize the fetcher.

        Args:
            base_uri: Absolute URI of the update feed.
            trust: Verification key and payload key material.
            timeout: Per-request timeout in seconds.
            chunk_size: Download chunk size in bytes.
            transport: Optional httpx transport for testing.
        """
        self._trust = trust
        self._transport = UpdateTransport(
            base_uri,
            timeout=timeout,
            chunk_size=chunk_size,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        config: UpdateConfig,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> ManifestFetcher:
        return cls(
            config.base_uri,
            config.trust_context(),
            timeout=config.timeout_seconds,
            chunk_size=config.chunk_size,
            transport=transport,
        )

    def __enter__(self) -> ManifestFetcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._transport.close()

    @property
    def trust(self) -> TrustContext:
        return self._trust

    @property
    def base_uri(self) -> str:
        return self._transport.base_uri

    def create_blob_decryptor(self) -> BlobTransform:
        return self._trust.create_blob_decryptor()

    def create_blob_encryptor(self) -> BlobTransform:
        return self._trust.create_blob_encryptor()

    def fetch(self, product_name: str) -> AvailableUpdate:
        """Fetch and verify ``{product_name}.xml``, raising on any problem.

        Raises:
            UpdateTransportError: If the manifest cannot be downloaded.
            ManifestFormatError: If the document is malformed.
            DataIntegrityError: If any signature or path check fails.
        """
        root = parse_document(self._transport.get_text(manifest_path(product_name)))
        if is_legacy_document(root):
            return LegacyBlobUpdate.from_element(root, self._trust, self._transport)
        return UpdateManifest.from_element(root, self._trust, self._transport)

    def find_update(
        self,
        product_name: str,
        current_version: str | Version | None = None,
    ) -> AvailableUpdate | None:
        """Look for an update to ``product_name``.

        Returns:
            The verified update, or None when there is none, it is not newer
            than ``current_version``, or anything went wrong. Failures are
            logged, never raised.
        """
        try:
            update = self.fetch(product_name)
            installed = coerce_version(current_version) if current_version is not None else None
        except (PatchfeedError, ValueError) as e:
            logger.warning(
                "patchfeed.fetcher.check_failed",
                product=product_name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        if installed is not None and not update.new_version > installed:
            logger.info(
                "patchfeed.fetcher.up_to_date",
                product=product_name,
                installed=str(installed),
                available=str(update.new_version),
            )
            return None

        logger.info(
            "patchfeed.fetcher.update_available",
            product=product_name,
            version=str(update.new_version),
            strategy=update.strategy.value,
        )
        return update
