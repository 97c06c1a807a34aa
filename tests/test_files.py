"""Tests for FileDescriptor: creation, comparison with disk, and download."""

from __future__ import annotations

import base64
import os
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from patchfeed.crypto.keys import generate_signing_keypair
from patchfeed.crypto.signing import hash_file
from patchfeed.crypto.trust import TrustContext
from patchfeed.errors import (
    ContentMismatchError,
    ManifestFormatError,
    MissingDirectoryError,
    SignatureVerificationError,
    TargetExistsError,
    UnsafePathError,
)
from patchfeed.files import FileDescriptor
from patchfeed.progress import OperationCancelled, ProgressCounter
from patchfeed.publish import encode_file
from patchfeed.testing.fixtures import write_tree
from patchfeed.testing.mocks import StaticUpdateServer
from patchfeed.transport.http import UpdateTransport


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    return write_tree(tmp_path / "src", {"bin/app.exe": b"\x00\x01app" * 500, "empty.dat": b""})


@pytest.fixture
def descriptor(source_dir: Path, signing_key: RSAPrivateKey) -> FileDescriptor:
    return FileDescriptor.create(source_dir, "bin/app.exe", "files/bin/app.exe", [signing_key])


class TestCreate:
    """Tests for the publisher-side FileDescriptor.create."""

    def test_create_describes_file(
        self, source_dir: Path, descriptor: FileDescriptor
    ) -> None:
        path = source_dir / "bin" / "app.exe"

        assert descriptor.relative_path == "bin/app.exe"
        assert descriptor.remote_url == "files/bin/app.exe"
        assert descriptor.length == path.stat().st_size
        assert descriptor.hash == hash_file(path)
        assert len(descriptor.signatures) == 1
        assert descriptor.signature == descriptor.signatures[0]
        assert abs(descriptor.date_modified_utc.timestamp() - path.stat().st_mtime) < 1e-3

    def test_create_signs_with_every_key(
        self, source_dir: Path, signing_key: RSAPrivateKey
    ) -> None:
        other_key, _ = generate_signing_keypair()
        descriptor = FileDescriptor.create(
            source_dir, "empty.dat", "files/empty.dat", [signing_key, other_key]
        )

        assert len(descriptor.signatures) == 2
        assert descriptor.length == 0

    def test_create_requires_a_key(self, source_dir: Path) -> None:
        with pytest.raises(ValueError, match="signing key"):
            FileDescriptor.create(source_dir, "empty.dat", "files/empty.dat", [])

    def test_create_rejects_traversal(self, source_dir: Path, signing_key: RSAPrivateKey) -> None:
        with pytest.raises(UnsafePathError):
            FileDescriptor.create(source_dir, "../outside.txt", "files/x", [signing_key])


class TestConstruction:
    """Tests for signature verification at construction time."""

    def test_unverifiable_descriptor_cannot_exist(
        self, descriptor: FileDescriptor, trust_context: TrustContext
    ) -> None:
        """A descriptor signed by a different key is rejected when built."""
        _, stranger = generate_signing_keypair()

        with pytest.raises(SignatureVerificationError):
            FileDescriptor(
                relative_path=descriptor.relative_path,
                remote_url=descriptor.remote_url,
                length=descriptor.length,
                date_modified_utc=descriptor.date_modified_utc,
                hash=descriptor.hash,
                signatures=descriptor.signatures,
                public_key=stranger,
            )

    def test_any_valid_signature_is_enough(
        self, descriptor: FileDescriptor, trust_context: TrustContext
    ) -> None:
        rebuilt = FileDescriptor(
            relative_path=descriptor.relative_path,
            remote_url=descriptor.remote_url,
            length=descriptor.length,
            date_modified_utc=descriptor.date_modified_utc,
            hash=descriptor.hash,
            signatures=[b"\x00" * 256, descriptor.signature],
            public_key=trust_context.public_key,
        )
        assert rebuilt.signature == b"\x00" * 256

    def test_hash_must_be_sha512(
        self, descriptor: FileDescriptor, trust_context: TrustContext
    ) -> None:
        with pytest.raises(ValueError, match="SHA-512"):
            FileDescriptor(
                relative_path="x",
                remote_url="x",
                length=1,
                date_modified_utc=descriptor.date_modified_utc,
                hash=b"\x00" * 32,
                signatures=descriptor.signatures,
                public_key=trust_context.public_key,
            )

    @pytest.mark.parametrize(
        ("field", "value"),
        [
            ("hash", b"\x00" * 64),
            ("signatures", (b"forged",)),
            ("relative_path", "../evil.exe"),
            ("length", 0),
        ],
    )
    def test_verified_fields_are_read_only(
        self, descriptor: FileDescriptor, field: str, value: object
    ) -> None:
        original = getattr(descriptor, field)

        with pytest.raises(AttributeError):
            setattr(descriptor, field, value)
        assert getattr(descriptor, field) == original

    def test_no_new_attributes(self, descriptor: FileDescriptor) -> None:
        with pytest.raises(AttributeError):
            descriptor.extra = "x"  # type: ignore[attr-defined]


class TestXml:
    """Tests for to_xml / from_xml."""

    def test_round_trip(self, descriptor: FileDescriptor, trust_context: TrustContext) -> None:
        assert FileDescriptor.from_xml(descriptor.to_xml(), trust_context) == descriptor

    def test_backslash_paths_are_normalized(
        self, descriptor: FileDescriptor, trust_context: TrustContext
    ) -> None:
        element = descriptor.to_xml()
        element.set("RelativePath", "bin\\app.exe")

        assert FileDescriptor.from_xml(element, trust_context).relative_path == "bin/app.exe"

    def test_missing_attribute_is_malformed(
        self, descriptor: FileDescriptor, trust_context: TrustContext
    ) -> None:
        element = descriptor.to_xml()
        del element.attrib["Size"]

        with pytest.raises(ManifestFormatError, match="Size"):
            FileDescriptor.from_xml(element, trust_context)

    def test_bad_base64_is_malformed(
        self, descriptor: FileDescriptor, trust_context: TrustContext
    ) -> None:
        element = descriptor.to_xml()
        hash_node = element.find("Hash")
        assert hash_node is not None
        hash_node.text = "not base64!"

        with pytest.raises(ManifestFormatError, match="base64"):
            FileDescriptor.from_xml(element, trust_context)

    def test_missing_signature_is_malformed(
        self, descriptor: FileDescriptor, trust_context: TrustContext
    ) -> None:
        element = descriptor.to_xml()
        for node in element.findall("Signature"):
            element.remove(node)

        with pytest.raises(ManifestFormatError, match="no Signature"):
            FileDescriptor.from_xml(element, trust_context)

    def test_flipped_hash_fails_verification(
        self, descriptor: FileDescriptor, trust_context: TrustContext
    ) -> None:
        element = descriptor.to_xml()
        hash_node = element.find("Hash")
        assert hash_node is not None
        raw = bytearray(base64.b64decode(hash_node.text or ""))
        raw[-1] ^= 0x80
        hash_node.text = base64.b64encode(bytes(raw)).decode("ascii")

        with pytest.raises(SignatureVerificationError):
            FileDescriptor.from_xml(element, trust_context)


class TestMatches:
    """Tests for comparing a descriptor with the installed file."""

    def test_identical_file_matches(self, descriptor: FileDescriptor, source_dir: Path) -> None:
        assert descriptor.matches(source_dir) is True

    def test_missing_file_does_not_match(self, descriptor: FileDescriptor, tmp_path: Path) -> None:
        empty = tmp_path / "empty-install"
        empty.mkdir()
        assert descriptor.matches(empty) is False

    def test_missing_directory_raises(self, descriptor: FileDescriptor, tmp_path: Path) -> None:
        with pytest.raises(MissingDirectoryError, match="does not exist"):
            descriptor.matches(tmp_path / "nowhere")

    def test_different_length_does_not_match(
        self, descriptor: FileDescriptor, source_dir: Path
    ) -> None:
        path = source_dir / "bin" / "app.exe"
        stat = path.stat()
        path.write_bytes(path.read_bytes() + b"!")
        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns))

        assert descriptor.matches(source_dir) is False

    def test_different_content_does_not_match(
        self, descriptor: FileDescriptor, source_dir: Path
    ) -> None:
        path = source_dir / "bin" / "app.exe"
        stat = path.stat()
        data = bytearray(path.read_bytes())
        data[10] ^= 0xFF
        path.write_bytes(bytes(data))
        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns))

        assert descriptor.matches(source_dir) is False

    @pytest.mark.parametrize(
        ("offset", "expected"), [(1, True), (-1, True), (3, False), (-3, False)]
    )
    def test_timestamp_tolerance(
        self,
        descriptor: FileDescriptor,
        source_dir: Path,
        offset: int,
        expected: bool,
    ) -> None:
        """Modification times within two seconds match; three seconds apart do not."""
        path = source_dir / "bin" / "app.exe"
        shifted = descriptor.date_modified_utc.timestamp() + offset
        os.utime(path, (shifted, shifted))

        assert descriptor.matches(source_dir) is expected


class TestStripPrefix:
    def test_strip_prefix(self, descriptor: FileDescriptor, tmp_path: Path) -> None:
        stripped = descriptor.strip_prefix("bin/")

        assert stripped.relative_path == "app.exe"
        assert stripped.hash == descriptor.hash
        assert stripped.signatures == descriptor.signatures
        assert stripped.length == descriptor.length
        assert descriptor.relative_path == "bin/app.exe"

    def test_strip_foreign_prefix_raises(self, descriptor: FileDescriptor) -> None:
        with pytest.raises(ValueError):
            descriptor.strip_prefix("lib")


class TestDownloadFile:
    """Tests for download, verification and installation of one file."""

    @pytest.fixture
    def served(
        self,
        update_server: StaticUpdateServer,
        source_dir: Path,
        descriptor: FileDescriptor,
        trust_context: TrustContext,
    ) -> StaticUpdateServer:
        encode_file(
            source_dir / "bin" / "app.exe",
            trust_context,
            update_server.root / "files" / "bin" / "app.exe",
        )
        return update_server

    @pytest.fixture
    def transport(self, update_server: StaticUpdateServer) -> UpdateTransport:
        return UpdateTransport(
            update_server.base_uri, transport=update_server.transport, chunk_size=256
        )

    def test_download_installs_verified_file(
        self,
        served: StaticUpdateServer,
        transport: UpdateTransport,
        descriptor: FileDescriptor,
        trust_context: TrustContext,
        source_dir: Path,
        install_dir: Path,
    ) -> None:
        counter = ProgressCounter()
        target = descriptor.download_file(install_dir, counter, transport, trust_context)

        assert target == install_dir / "bin" / "app.exe"
        assert target.read_bytes() == (source_dir / "bin" / "app.exe").read_bytes()
        assert abs(target.stat().st_mtime - descriptor.date_modified_utc.timestamp()) < 1e-3
        assert counter.progress == descriptor.length
        assert counter.caption == "Downloading bin/app.exe"
        assert descriptor.matches(install_dir)

    def test_existing_target_raises(
        self,
        served: StaticUpdateServer,
        transport: UpdateTransport,
        descriptor: FileDescriptor,
        trust_context: TrustContext,
        install_dir: Path,
    ) -> None:
        write_tree(install_dir, {"bin/app.exe": b"old"})

        with pytest.raises(TargetExistsError, match="already exists"):
            descriptor.download_file(install_dir, None, transport, trust_context)
        assert (install_dir / "bin" / "app.exe").read_bytes() == b"old"
        assert served.requests == []

    def test_missing_target_dir_raises(
        self,
        served: StaticUpdateServer,
        transport: UpdateTransport,
        descriptor: FileDescriptor,
        trust_context: TrustContext,
        tmp_path: Path,
    ) -> None:
        with pytest.raises(MissingDirectoryError):
            descriptor.download_file(tmp_path / "nowhere", None, transport, trust_context)

    def test_wrong_content_is_deleted(
        self,
        served: StaticUpdateServer,
        transport: UpdateTransport,
        descriptor: FileDescriptor,
        trust_context: TrustContext,
        source_dir: Path,
        install_dir: Path,
    ) -> None:
        """A payload shorter than declared is rejected and nothing is left behind."""
        truncated = source_dir / "short.bin"
        truncated.write_bytes(b"\x00\x01app" * 10)
        encode_file(truncated, trust_context, served.root / "files" / "bin" / "app.exe")

        with pytest.raises(ContentMismatchError, match="length mismatch"):
            descriptor.download_file(install_dir, None, transport, trust_context)
        assert not (install_dir / "bin" / "app.exe").exists()

    def test_wrong_key_is_deleted(
        self,
        served: StaticUpdateServer,
        transport: UpdateTransport,
        descriptor: FileDescriptor,
        trust_context: TrustContext,
        install_dir: Path,
    ) -> None:
        """A payload encrypted under another key cannot be decoded."""
        other = trust_context.with_blob_material(b"k" * 32, b"i" * 16)

        with pytest.raises(ContentMismatchError):
            descriptor.download_file(install_dir, None, transport, other)
        assert not (install_dir / "bin" / "app.exe").exists()

    def test_cancelled_download_is_deleted(
        self,
        served: StaticUpdateServer,
        transport: UpdateTransport,
        descriptor: FileDescriptor,
        trust_context: TrustContext,
        install_dir: Path,
    ) -> None:
        counter = ProgressCounter()
        served.set_hook(lambda request: counter.cancel())

        with pytest.raises(OperationCancelled):
            descriptor.download_file(install_dir, counter, transport, trust_context)
        assert not (install_dir / "bin" / "app.exe").exists()
