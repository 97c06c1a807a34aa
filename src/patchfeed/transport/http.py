"""Synchronous HTTP access to the update server.

Every request is a plain GET relative to the configured base URI: the
manifest (``{product}.xml``), then each encrypted file or archive. Calls
block; a UI caller is expected to run them off its event thread.

Example:
    >>> with UpdateTransport("https://updates.example.com/feed/") as transport:
    ...     xml = transport.get_text("Billing.xml")
    ...     with transport.stream("files/app.exe") as chunks:
    ...         for chunk in chunks:
    ...             ...
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Optional

import httpx

from patchfeed.errors import UpdateTransportError
from patchfeed.observability import get_logger
from patchfeed.utils.sanitization import sanitize_url

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_CHUNK_SIZE = 64 * 1024


def normalize_base_uri(base_uri: str) -> str:
    """Ensure the base URI ends with ``/`` so relative joins stay under it."""
    base = str(base_uri).strip()
    if not base:
        raise ValueError("base_uri must not be empty")
    return base if base.endswith("/") else base + "/"


class UpdateTransport:
    """Thin ``httpx.Client`` wrapper bound to one update feed.

    Attributes:
        base_uri: Absolute base URI, always ending with ``/``.
        chunk_size: Default read size for streamed downloads.
    """

    def __init__(
        self,
        base_uri: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        """Initialize the transport.

        Args:
            base_uri: Absolute URI of the update feed.
            timeout: Per-request timeout in seconds.
            chunk_size: Default streaming chunk size in bytes.
            transport: Optional httpx transport for testing.
        """
        self.base_uri = normalize_base_uri(base_uri)
        self.chunk_size = chunk_size
        kwargs: dict[str, Any] = {
            "timeout": httpx.Timeout(timeout),
            "follow_redirects": True,
        }
        if transport is not None:
            kwargs["transport"] = transport
        self._client = httpx.Client(**kwargs)

    def __enter__(self) -> UpdateTransport:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def url_for(self, relative: str) -> str:
        return str(httpx.URL(self.base_uri).join(relative))

    def get_text(self, relative: str) -> str:
        """GET a small text document (the manifest).

        Raises:
            UpdateTransportError: On connection errors or non-2xx statuses.
        """
        url = self.url_for(relative)
        try:
            response = self._client.get(url)
        except httpx.HTTPError as e:
            raise UpdateTransportError(sanitize_url(url), str(e) or type(e).__name__) from e
        self._raise_for_status(response, url)
        logger.debug(
            "patchfeed.transport.fetched",
            url=sanitize_url(url),
            size=len(response.content),
        )
        return response.text

    @contextmanager
    def stream(self, relative: str, chunk_size: int | None = None) -> Iterator[Iterator[bytes]]:
        """Stream a binary resource chunk by chunk.

        The response is closed when the block exits, including when the
        consumer stops early (cancellation).

        Raises:
            UpdateTransportError: On connection errors or non-2xx statuses.
        """
        url = self.url_for(relative)
        size = chunk_size or self.chunk_size
        try:
            with self._client.stream("GET", url) as response:
                self._raise_for_status(response, url)
                yield self._iter_chunks(response, size)
        except httpx.HTTPError as e:
            raise UpdateTransportError(sanitize_url(url), str(e) or type(e).__name__) from e

    @staticmethod
    def _iter_chunks(response: httpx.Response, size: int) -> Iterator[bytes]:
        for chunk in response.iter_bytes(size):
            if chunk:
                yield chunk

    @staticmethod
    def _raise_for_status(response: httpx.Response, url: str) -> None:
        if response.is_success:
            return
        raise UpdateTransportError(
            sanitize_url(url),
            f"HTTP {response.status_code}",
            status_code=response.status_code,
        )
