"""Pytest fixtures and context managers for patchfeed tests.

Fixtures (use with pytest; enable with ``pytest_plugins``):
    signing_key: RSA private key for the test session.
    trust_context: TrustContext for ``signing_key`` with random AES material.
    update_server: StaticUpdateServer over an empty per-test feed directory.
    install_dir: Empty per-test install directory.

Context managers:
    serve_feed(): Sync context manager yielding a StaticUpdateServer.

Helpers:
    write_tree(): Create files from a {relative path: bytes} mapping.
"""

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from patchfeed.crypto.keys import generate_blob_material, generate_signing_keypair
from patchfeed.crypto.trust import TrustContext
from patchfeed.fetcher import ManifestFetcher
from patchfeed.testing.mocks import DEFAULT_TEST_BASE_URI, StaticUpdateServer


@pytest.fixture(scope="session")
def signing_key() -> RSAPrivateKey:
    """Publisher signing key, generated once per session (RSA generation is slow)."""
    private_key, _ = generate_signing_keypair()
    return private_key


@pytest.fixture(scope="session")
def trust_context(signing_key: RSAPrivateKey) -> TrustContext:
    """Trust context matching ``signing_key`` with a fresh pre-shared AES key."""
    key, iv = generate_blob_material()
    return TrustContext(public_key=signing_key.public_key(), blob_key=key, blob_iv=iv)


@pytest.fixture
def update_server(tmp_path: Path) -> StaticUpdateServer:
    """Server over ``tmp_path/feed`` (created empty)."""
    root = tmp_path / "feed"
    root.mkdir()
    return StaticUpdateServer(root)


@pytest.fixture
def install_dir(tmp_path: Path) -> Path:
    path = tmp_path / "install"
    path.mkdir()
    return path


@contextmanager
def serve_feed(
    root: Path,
    trust: TrustContext,
    base_uri: str = DEFAULT_TEST_BASE_URI,
) -> Iterator[tuple[StaticUpdateServer, ManifestFetcher]]:
    """Serve ``root`` and yield the server with a fetcher bound to it.

    Example:
        >>> with serve_feed(feed_dir, trust) as (server, fetcher):
        ...     update = fetcher.find_update("Billing")
    """
    server = StaticUpdateServer(root, base_uri)
    with ManifestFetcher(base_uri, trust, transport=server.transport) as fetcher:
        try:
            yield server, fetcher
        finally:
            server.clear()


def write_tree(root: Path, files: Mapping[str, bytes]) -> Path:
    """Create ``root`` and write each ``{relative path: bytes}`` entry below it."""
    root.mkdir(parents=True, exist_ok=True)
    for relative, data in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    return root


__all__ = [
    "install_dir",
    "serve_feed",
    "signing_key",
    "trust_context",
    "update_server",
    "write_tree",
]
