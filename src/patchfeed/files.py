"""Per-file identity, verification and download.

A FileDescriptor is one ``<File>`` entry of an incremental manifest:

    <File RelativePath="bin/app.exe" Url="files/bin/app.exe" Size="1048576"
          Timestamp="2024-05-01T09:58:12.0000000Z">
      <Hash>base64 SHA-512</Hash>
      <Signature>base64 RSA signature over the hash</Signature>
    </File>

Signatures are checked when the descriptor is constructed, so holding a
FileDescriptor means its hash is vouched for by the publisher. Content is
checked against that hash when downloading and when comparing with disk.
"""

from __future__ import annotations

import base64
import binascii
import copy
import os
from collections.abc import Iterable, Sequence
from datetime import datetime
from pathlib import Path
from xml.etree import ElementTree as ET

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

from patchfeed.crypto.signing import (
    DIGEST_SIZE,
    digests_equal,
    hash_file,
    new_hasher,
    sign_digest,
    verify_any,
)
from patchfeed.crypto.trust import TrustContext
from patchfeed.errors import (
    ContentMismatchError,
    ManifestFormatError,
    MissingDirectoryError,
    SignatureVerificationError,
    TargetExistsError,
)
from patchfeed.observability import get_logger
from patchfeed.progress import EmptyProgressReporter, ProgressReporter, raise_if_cancelled
from patchfeed.transport.http import UpdateTransport
from patchfeed.transport.pipeline import decode_stream
from patchfeed.utils.paths import normalize_relative_path, safe_join
from patchfeed.utils.timestamps import ensure_utc, format_timestamp, from_posix, parse_timestamp

logger = get_logger(__name__)

FILE_TAG = "File"
# Filesystems differ in mtime resolution (FAT rounds to 2 s)
MTIME_TOLERANCE_SECONDS = 2.0


class FileDescriptor:
    """A signature-verified description of one file in an update.

    Fields are read-only: they were covered by the signature check at
    construction and cannot be changed afterwards.

    Attributes:
        relative_path: Path below the install directory, ``/``-separated.
        remote_url: Location of the encrypted payload, relative to the base URI.
        length: Size of the plain file in bytes.
        date_modified_utc: Modification time to stamp on the installed file.
        hash: SHA-512 digest of the plain file.
        signatures: RSA signatures over ``hash``; at least one verifies.
    """

    __slots__ = (
        "_relative_path",
        "_remote_url",
        "_length",
        "_date_modified_utc",
        "_hash",
        "_signatures",
    )

    def __init__(
        self,
        relative_path: str,
        remote_url: str,
        length: int,
        date_modified_utc: datetime,
        hash: bytes,
        signatures: Sequence[bytes],
        public_key: RSAPublicKey,
    ) -> None:
        """Create a descriptor, verifying its signatures.

        Raises:
            UnsafePathError: If ``relative_path`` is absolute or climbs out with ``..``.
            ValueError: If ``length`` is negative or ``hash`` is not a SHA-512 digest.
            SignatureVerificationError: If no signature verifies under ``public_key``.
        """
        if length < 0:
            raise ValueError(f"length must be non-negative, got {length}")
        if len(hash) != DIGEST_SIZE:
            raise ValueError(f"hash must be a {DIGEST_SIZE}-byte SHA-512 digest, got {len(hash)}")
        self._relative_path = normalize_relative_path(relative_path)
        self._remote_url = remote_url
        self._length = length
        self._date_modified_utc = ensure_utc(date_modified_utc)
        self._hash = bytes(hash)
        self._signatures = tuple(bytes(s) for s in signatures)
        if not verify_any(self._hash, self._signatures, public_key):
            raise SignatureVerificationError(
                f"Signature verification failed for {self._relative_path}",
                details={"path": self._relative_path, "signatures": len(self._signatures)},
            )

    @property
    def relative_path(self) -> str:
        return self._relative_path

    @property
    def remote_url(self) -> str:
        return self._remote_url

    @property
    def length(self) -> int:
        return self._length

    @property
    def date_modified_utc(self) -> datetime:
        return self._date_modified_utc

    @property
    def hash(self) -> bytes:
        return self._hash

    @property
    def signatures(self) -> tuple[bytes, ...]:
        return self._signatures

    @property
    def signature(self) -> bytes:
        return self._signatures[0]

    def __repr__(self) -> str:
        return f"FileDescriptor({self.relative_path!r}, length={self.length})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FileDescriptor):
            return NotImplemented
        return (
            self.relative_path == other.relative_path
            and self.remote_url == other.remote_url
            and self.length == other.length
            and self.date_modified_utc == other.date_modified_utc
            and self.hash == other.hash
            and self.signatures == other.signatures
        )

    def __hash__(self) -> int:
        return hash((self.relative_path, self.hash))

    @classmethod
    def create(
        cls,
        base_path: str | Path,
        relative_path: str,
        remote_url: str,
        signing_keys: Iterable[RSAPrivateKey],
    ) -> FileDescriptor:
        """Describe a real file for publishing, signing its hash with every key."""
        keys = list(signing_keys)
        if not keys:
            raise ValueError("at least one signing key is required")
        path = safe_join(base_path, relative_path)
        stat = path.stat()
        digest = hash_file(path)
        return cls(
            relative_path=relative_path,
            remote_url=remote_url,
            length=stat.st_size,
            date_modified_utc=from_posix(stat.st_mtime),
            hash=digest,
            signatures=[sign_digest(digest, key) for key in keys],
            public_key=keys[0].public_key(),
        )

    @classmethod
    def from_xml(cls, element: ET.Element, trust: TrustContext) -> FileDescriptor:
        """Parse and verify a ``<File>`` element.

        Raises:
            ManifestFormatError: If attributes or children are missing or malformed.
            SignatureVerificationError: If no signature verifies.
            UnsafePathError: If the relative path escapes the install directory.
        """
        attrs = {name: element.get(name) for name in ("RelativePath", "Url", "Size", "Timestamp")}
        missing = [name for name, value in attrs.items() if value is None]
        if missing:
            raise ManifestFormatError(f"File element missing attributes: {', '.join(missing)}")
        relative_path = attrs["RelativePath"] or ""
        try:
            length = int(attrs["Size"] or "")
            timestamp = parse_timestamp(attrs["Timestamp"] or "")
        except ValueError as e:
            raise ManifestFormatError(f"invalid Size or Timestamp for {relative_path!r}") from e

        digest = _decode_b64(element.findtext("Hash"), "Hash", relative_path)
        signatures = [
            _decode_b64(node.text, "Signature", relative_path)
            for node in element.findall("Signature")
        ]
        if not signatures:
            raise ManifestFormatError(f"File element {relative_path!r} has no Signature")
        if len(digest) != DIGEST_SIZE:
            raise ManifestFormatError(f"Hash for {relative_path!r} is not a SHA-512 digest")
        if length < 0:
            raise ManifestFormatError(f"negative Size for {relative_path!r}")

        return cls(
            relative_path=relative_path,
            remote_url=attrs["Url"] or "",
            length=length,
            date_modified_utc=timestamp,
            hash=digest,
            signatures=signatures,
            public_key=trust.public_key,
        )

    def to_xml(self) -> ET.Element:
        element = ET.Element(
            FILE_TAG,
            {
                "RelativePath": self.relative_path,
                "Url": self.remote_url,
                "Size": str(self.length),
                "Timestamp": format_timestamp(self.date_modified_utc),
            },
        )
        ET.SubElement(element, "Hash").text = base64.b64encode(self.hash).decode("ascii")
        for signature in self.signatures:
            ET.SubElement(element, "Signature").text = base64.b64encode(signature).decode("ascii")
        return element

    def strip_prefix(self, prefix: str) -> FileDescriptor:
        """Copy with ``prefix`` removed from the front of ``relative_path``.

        Signatures cover the hash only, so the copy stays verified.
        """
        normalized = normalize_relative_path(prefix).rstrip("/") + "/"
        if not self.relative_path.startswith(normalized):
            raise ValueError(f"{self.relative_path!r} does not start with {normalized!r}")
        clone = copy.copy(self)
        clone._relative_path = normalize_relative_path(self.relative_path[len(normalized):])
        return clone

    def local_path(self, base_dir: str | Path) -> Path:
        return safe_join(base_dir, self.relative_path)

    def matches(self, install_dir: str | Path) -> bool:
        """True if the installed copy is identical to this descriptor.

        Compares length, then modification time (within
        ``MTIME_TOLERANCE_SECONDS``), then the SHA-512 hash.

        Raises:
            MissingDirectoryError: If ``install_dir`` does not exist.
        """
        base = Path(install_dir)
        if not base.is_dir():
            raise MissingDirectoryError(str(base))
        local = self.local_path(base)
        if not local.is_file():
            return False
        stat = local.stat()
        if stat.st_size != self.length:
            return False
        if abs(stat.st_mtime - self.date_modified_utc.timestamp()) > MTIME_TOLERANCE_SECONDS:
            return False
        return digests_equal(hash_file(local), self.hash)

    def download_file(
        self,
        target_dir: str | Path,
        progress: ProgressReporter | None,
        transport: UpdateTransport,
        trust: TrustContext,
    ) -> Path:
        """Download, decrypt, decompress and verify this file into ``target_dir``.

        The partial file is deleted on any failure or cancellation.

        Returns:
            Path of the installed file, stamped with ``date_modified_utc``.

        Raises:
            MissingDirectoryError: If ``target_dir`` does not exist.
            TargetExistsError: If the target file already exists.
            ContentMismatchError: If the content's length or hash is wrong.
            OperationCancelled: If cancellation is observed.
        """
        base = Path(target_dir)
        if not base.is_dir():
            raise MissingDirectoryError(str(base))
        target = self.local_path(base)
        if target.exists():
            raise TargetExistsError(str(target))

        progress = progress or EmptyProgressReporter()
        progress.caption = f"Downloading {self.relative_path}"
        progress.maximum = self.length
        raise_if_cancelled(progress)
        target.parent.mkdir(parents=True, exist_ok=True)

        hasher = new_hasher()
        try:
            with open(target, "xb") as sink, transport.stream(self.remote_url) as chunks:
                written = decode_stream(
                    chunks,
                    trust.create_blob_decryptor(),
                    sink,
                    hasher,
                    progress,
                    expected_length=self.length,
                    label=self.relative_path,
                )
            if written != self.length:
                raise ContentMismatchError(
                    self.relative_path,
                    "length mismatch",
                    details={"expected": self.length, "actual": written},
                )
            if not digests_equal(hasher.digest(), self.hash):
                raise ContentMismatchError(self.relative_path, "SHA-512 hash mismatch")
        except BaseException:
            target.unlink(missing_ok=True)
            raise

        mtime = self.date_modified_utc.timestamp()
        os.utime(target, (mtime, mtime))
        logger.debug(
            "patchfeed.files.downloaded",
            path=self.relative_path,
            bytes=written,
        )
        return target


def _decode_b64(text: str | None, field: str, relative_path: str) -> bytes:
    if not text or not text.strip():
        raise ManifestFormatError(f"{field} for {relative_path!r} is missing")
    try:
        return base64.b64decode("".join(text.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ManifestFormatError(f"{field} for {relative_path!r} is not valid base64") from e
