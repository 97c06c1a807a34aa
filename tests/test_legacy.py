"""Tests for whole-archive (legacy blob) updates."""

from __future__ import annotations

import base64
from datetime import datetime, timezone
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from packaging.version import Version

from patchfeed.crypto.keys import generate_blob_material, generate_signing_keypair
from patchfeed.crypto.trust import TrustContext
from patchfeed.errors import (
    ContentMismatchError,
    ManifestFormatError,
    MissingDirectoryError,
    SignatureVerificationError,
    UpdateFailedError,
)
from patchfeed.fetcher import ManifestFetcher
from patchfeed.legacy import (
    LegacyBlobUpdate,
    build_legacy_xml,
    is_legacy_document,
    pack_blob_fields,
    unpack_blob_fields,
)
from patchfeed.manifest import parse_document, serialize_document
from patchfeed.models.enums import UpdateStrategy
from patchfeed.progress import ProgressCounter
from patchfeed.publish import publish_legacy_blob
from patchfeed.testing.assertions import assert_sync_succeeded, assert_trees_equal
from patchfeed.testing.fixtures import write_tree
from patchfeed.testing.mocks import StaticUpdateServer
from patchfeed.transport.http import UpdateTransport

PRODUCT = "Billing"


@pytest.fixture
def full_build(tmp_path: Path) -> Path:
    return write_tree(
        tmp_path / "full-build",
        {
            "Billing.exe": b"MZ" + b"\x90" * 4000,
            "lib/ledger.dll": b"ledger" * 100,
            "config/defaults.ini": b"[main]\nprinter=auto\n",
        },
    )


@pytest.fixture
def legacy_feed(
    full_build: Path,
    update_server: StaticUpdateServer,
    signing_key: RSAPrivateKey,
    trust_context: TrustContext,
) -> StaticUpdateServer:
    publish_legacy_blob(
        full_build, update_server.root, PRODUCT, "3.0.0", "Rewrite.\n", signing_key, trust_context
    )
    return update_server


class TestBlobFields:
    def test_fields_round_trip(self) -> None:
        packed = pack_blob_fields(b"k" * 32, b"i" * 16, b"")

        assert unpack_blob_fields(packed, 3) == [b"k" * 32, b"i" * 16, b""]

    @pytest.mark.parametrize(
        "data",
        [
            pytest.param(b"\x01\x00", id="short-length"),
            pytest.param(b"\x10\x00\x00\x00abc", id="length-past-end"),
            pytest.param(b"\xff\xff\xff\xff", id="negative-length"),
        ],
    )
    def test_malformed_fields(self, data: bytes) -> None:
        with pytest.raises(ManifestFormatError):
            unpack_blob_fields(data, 1)

    def test_trailing_bytes(self) -> None:
        with pytest.raises(ManifestFormatError, match="trailing"):
            unpack_blob_fields(pack_blob_fields(b"a") + b"zz", 1)


class TestParsing:
    """Tests for reading the legacy manifest."""

    @pytest.fixture
    def transport(self, update_server: StaticUpdateServer) -> UpdateTransport:
        return UpdateTransport(update_server.base_uri, transport=update_server.transport)

    def test_fetch_selects_legacy_variant(
        self, legacy_feed: StaticUpdateServer, fetcher: ManifestFetcher
    ) -> None:
        update = fetcher.fetch(PRODUCT)

        assert isinstance(update, LegacyBlobUpdate)
        assert update.strategy is UpdateStrategy.LEGACY_BLOB
        assert update.product_name == PRODUCT
        assert update.new_version == Version("3.0.0")
        assert update.url == "Billing.bin"
        assert update.publish_date.tzinfo is not None

    def test_get_changes(self, legacy_feed: StaticUpdateServer, fetcher: ManifestFetcher) -> None:
        update = fetcher.fetch(PRODUCT)

        assert update.get_changes("2.1.0") == "Rewrite."
        assert update.get_changes("3.0") == ""

    def test_is_legacy_document(self, legacy_feed: StaticUpdateServer) -> None:
        root = parse_document((legacy_feed.root / "Billing.xml").read_bytes())

        assert is_legacy_document(root)
        assert root.tag == "Update"

    def test_blob_under_other_key_is_malformed(
        self, legacy_feed: StaticUpdateServer, trust_context: TrustContext
    ) -> None:
        key, iv = generate_blob_material()
        other = trust_context.with_blob_material(key, iv)
        with ManifestFetcher(
            legacy_feed.base_uri, other, transport=legacy_feed.transport
        ) as fetcher:
            with pytest.raises(ManifestFormatError):
                fetcher.fetch(PRODUCT)
            assert fetcher.find_update(PRODUCT) is None

    def test_blob_with_bad_key_material(
        self, trust_context: TrustContext, transport: UpdateTransport
    ) -> None:
        fields = pack_blob_fields(b"short", b"i" * 16, b"sig")
        blob = trust_context.create_blob_encryptor().transform(fields)
        root = build_legacy_xml(PRODUCT, "1.0", datetime.now(timezone.utc), "", blob)

        with pytest.raises(ManifestFormatError, match="key material"):
            LegacyBlobUpdate.parse(serialize_document(root), trust_context, transport)

    def test_missing_blob_text(
        self, trust_context: TrustContext, transport: UpdateTransport
    ) -> None:
        root = build_legacy_xml(PRODUCT, "1.0", datetime.now(timezone.utc), "", b"")

        with pytest.raises(ManifestFormatError, match="requires"):
            LegacyBlobUpdate.from_element(root, trust_context, transport)

    def test_blob_not_base64(
        self, trust_context: TrustContext, transport: UpdateTransport
    ) -> None:
        root = build_legacy_xml(PRODUCT, "1.0", datetime.now(timezone.utc), "", b"x")
        blob = root.find("Blob")
        assert blob is not None
        blob.text = "%%%"

        with pytest.raises(ManifestFormatError, match="decrypted"):
            LegacyBlobUpdate.from_element(root, trust_context, transport)

    def test_explicit_url(
        self, trust_context: TrustContext, transport: UpdateTransport
    ) -> None:
        key, iv = generate_blob_material()
        blob = trust_context.create_blob_encryptor().transform(pack_blob_fields(key, iv, b"s"))
        root = build_legacy_xml(
            PRODUCT, "1.0", datetime.now(timezone.utc), "", blob, url="archives/b.bin"
        )

        update = LegacyBlobUpdate.from_element(root, trust_context, transport)
        assert update.url == "archives/b.bin"


class TestDownload:
    """Tests for downloading and unpacking the archive."""

    def test_download_unpacks_whole_build(
        self,
        legacy_feed: StaticUpdateServer,
        fetcher: ManifestFetcher,
        full_build: Path,
        install_dir: Path,
    ) -> None:
        update = fetcher.fetch(PRODUCT)
        counter = ProgressCounter()

        result = update.sync(install_dir, counter)

        staging = assert_sync_succeeded(result)
        assert_trees_equal(staging, full_build)
        assert counter.can_cancel is True
        assert legacy_feed.requested_paths() == ["Billing.xml", "Billing.bin"]

    def test_download_files_returns_staging(
        self,
        legacy_feed: StaticUpdateServer,
        fetcher: ManifestFetcher,
        full_build: Path,
        install_dir: Path,
    ) -> None:
        staging = fetcher.fetch(PRODUCT).download_files(install_dir)

        assert staging is not None
        assert_trees_equal(staging, full_build)

    def test_archive_signed_by_stranger_fails(
        self,
        full_build: Path,
        update_server: StaticUpdateServer,
        trust_context: TrustContext,
        fetcher: ManifestFetcher,
        install_dir: Path,
        staging_root: Path,
    ) -> None:
        stranger, _ = generate_signing_keypair()
        publish_legacy_blob(
            full_build, update_server.root, PRODUCT, "3.0.0", "", stranger, trust_context
        )
        update = fetcher.fetch(PRODUCT)

        with pytest.raises(UpdateFailedError) as exc_info:
            update.download_files(install_dir)
        assert isinstance(exc_info.value.cause, SignatureVerificationError)
        assert list(staging_root.iterdir()) == []

    def test_truncated_archive_fails(
        self,
        legacy_feed: StaticUpdateServer,
        fetcher: ManifestFetcher,
        install_dir: Path,
        staging_root: Path,
    ) -> None:
        archive = legacy_feed.root / "Billing.bin"
        archive.write_bytes(archive.read_bytes()[:-32])

        with pytest.raises(UpdateFailedError) as exc_info:
            fetcher.fetch(PRODUCT).download_files(install_dir)
        assert isinstance(exc_info.value.cause, ContentMismatchError)
        assert list(staging_root.iterdir()) == []

    def test_cancel_during_download(
        self,
        legacy_feed: StaticUpdateServer,
        fetcher: ManifestFetcher,
        install_dir: Path,
        staging_root: Path,
    ) -> None:
        update = fetcher.fetch(PRODUCT)
        counter = ProgressCounter()
        legacy_feed.set_hook(lambda request: counter.cancel())

        assert update.download_files(install_dir, counter) is None
        assert list(staging_root.iterdir()) == []

    def test_missing_install_dir(
        self, legacy_feed: StaticUpdateServer, fetcher: ManifestFetcher, tmp_path: Path
    ) -> None:
        with pytest.raises(MissingDirectoryError):
            fetcher.fetch(PRODUCT).download_files(tmp_path / "missing")


def test_blob_is_base64_in_document(
    legacy_feed: StaticUpdateServer,
) -> None:
    root = parse_document((legacy_feed.root / "Billing.xml").read_bytes())
    blob = base64.b64decode(root.findtext("Blob") or "", validate=True)

    assert len(blob) % 16 == 0
    assert (legacy_feed.root / "Billing.bin").is_file()
