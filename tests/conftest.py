"""Shared pytest fixtures for patchfeed tests.

This module provides common fixtures used across multiple test modules:
a published feed for a small build and a per-test temp directory so that
staging directories can be inspected and never leak.
"""

from __future__ import annotations

import tempfile
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from patchfeed.crypto.trust import TrustContext
from patchfeed.fetcher import ManifestFetcher
from patchfeed.models.versions import VersionEntry
from patchfeed.publish import publish_tree
from patchfeed.testing.fixtures import write_tree
from patchfeed.testing.mocks import StaticUpdateServer

# Load patchfeed.testing fixtures (signing_key, trust_context, update_server, install_dir)
pytest_plugins = ["patchfeed.testing.fixtures"]

PRODUCT = "Billing"

# A(100 B), B(50 B), C(75 B): sizes used by the selective-download scenario
BUILD_FILES = {
    "A.txt": b"a" * 100,
    "B.txt": b"b" * 50,
    "C.txt": b"c" * 75,
}


@pytest.fixture(autouse=True)
def staging_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect tempfile (staging dirs, archive spools) into the test's tmp_path."""
    root = tmp_path / "system-tmp"
    root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(root))
    return root


@pytest.fixture
def build_dir(tmp_path: Path) -> Path:
    """A(100 B), B(50 B) and C(75 B) under tmp_path/build."""
    return write_tree(tmp_path / "build", BUILD_FILES)


def _version_entry(version: str, changes: str = "", day: int = 1) -> VersionEntry:
    return VersionEntry(
        version=version,
        publish_date=datetime(2024, 5, day, 10, 0, tzinfo=timezone.utc),
        changes=changes,
    )


@pytest.fixture
def published_feed(
    build_dir: Path,
    update_server: StaticUpdateServer,
    signing_key: RSAPrivateKey,
    trust_context: TrustContext,
) -> StaticUpdateServer:
    """``build_dir`` published as version 2.1.0 (with 2.0.0 history) into the server's root."""
    publish_tree(
        build_dir,
        update_server.root,
        PRODUCT,
        [
            _version_entry("2.1.0", "Fixed printing.\n", day=2),
            _version_entry("2.0.0", "New ledger view.", day=1),
        ],
        [signing_key],
        trust_context,
    )
    return update_server


@pytest.fixture
def fetcher(
    update_server: StaticUpdateServer, trust_context: TrustContext
) -> Iterator[ManifestFetcher]:
    """Fetcher bound to ``update_server``; closed after the test."""
    with ManifestFetcher(
        update_server.base_uri, trust_context, transport=update_server.transport
    ) as fetcher:
        yield fetcher
