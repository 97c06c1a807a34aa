"""Whole-archive ("legacy blob") updates.

Older publishers ship the entire build as one encrypted archive instead of
per-file downloads. The manifest carries the archive's own key material
inside an encrypted ``Blob``:

    <Update Name="Billing" NewVersion="2.1.0" PublishDate="2024-05-01T10:00:00Z"
            Url="Billing.bin">
      <Description>Fixed printing.</Description>
      <Blob>base64(AES(pre-shared key, key_field + iv_field + signature_field))</Blob>
    </Update>

Each field is an int32 little-endian length followed by that many bytes:
the archive's AES key, its IV, and an RSA signature over the SHA-512 of the
plain (decrypted, decompressed) archive. The archive itself is gzip then
AES-CBC with the embedded key, and unpacks with ``patchfeed.archive``.
"""

from __future__ import annotations

import base64
import binascii
import struct
import tempfile
from datetime import datetime
from pathlib import Path
from xml.etree import ElementTree as ET

from packaging.version import InvalidVersion, Version

from patchfeed.archive import extract_archive
from patchfeed.crypto.signing import new_hasher
from patchfeed.crypto.trust import TrustContext, validate_blob_material
from patchfeed.errors import ManifestFormatError, MissingDirectoryError, SignatureVerificationError
from patchfeed.manifest import ROOT_TAG, coerce_version, parse_document
from patchfeed.models.enums import UpdateStrategy
from patchfeed.observability import get_logger
from patchfeed.progress import (
    UNKNOWN_MAXIMUM,
    OperationCancelled,
    ProgressReporter,
    raise_if_cancelled,
)
from patchfeed.sync import SyncResult, run_staged
from patchfeed.transport.http import UpdateTransport
from patchfeed.transport.pipeline import decode_stream
from patchfeed.utils.timestamps import format_timestamp, parse_timestamp

logger = get_logger(__name__)

FIELD_LENGTH = struct.Struct("<i")
ARCHIVE_SUFFIX = ".bin"


def is_legacy_document(root: ET.Element) -> bool:
    """True if ``root`` is a whole-archive update rather than an incremental manifest."""
    return root.get("NewVersion") is not None and root.find("Blob") is not None


def pack_blob_fields(*fields: bytes) -> bytes:
    return b"".join(FIELD_LENGTH.pack(len(field)) + field for field in fields)


def unpack_blob_fields(data: bytes, count: int) -> list[bytes]:
    """Split ``count`` length-prefixed fields out of ``data``.

    Raises:
        ManifestFormatError: If a length is invalid or bytes are left over.
    """
    fields: list[bytes] = []
    offset = 0
    for index in range(count):
        if offset + FIELD_LENGTH.size > len(data):
            raise ManifestFormatError(f"blob ends before field {index}")
        (length,) = FIELD_LENGTH.unpack_from(data, offset)
        offset += FIELD_LENGTH.size
        if length < 0 or offset + length > len(data):
            raise ManifestFormatError(f"blob field {index} has invalid length {length}")
        fields.append(data[offset:offset + length])
        offset += length
    if offset != len(data):
        raise ManifestFormatError("blob has trailing bytes")
    return fields


class LegacyBlobUpdate:
    """A parsed whole-archive update.

    Attributes:
        product_name: Product the update belongs to.
        new_version: Version the archive installs.
        publish_date: When it was published (aware, UTC).
        description: Changelog text.
        url: Location of the encrypted archive, relative to the base URI.
    """

    strategy = UpdateStrategy.LEGACY_BLOB

    def __init__(
        self,
        product_name: str,
        new_version: Version,
        publish_date: datetime,
        description: str,
        url: str,
        archive_key: bytes,
        archive_iv: bytes,
        signature: bytes,
        trust: TrustContext,
        transport: UpdateTransport,
    ) -> None:
        self.product_name = product_name
        self.new_version = new_version
        self.publish_date = publish_date
        self.description = description
        self.url = url
        self.signature = signature
        self._archive_trust = trust.with_blob_material(archive_key, archive_iv)
        self._transport = transport

    def __repr__(self) -> str:
        return f"LegacyBlobUpdate({self.product_name!r}, new_version={self.new_version})"

    @classmethod
    def parse(
        cls, xml_text: str | bytes, trust: TrustContext, transport: UpdateTransport
    ) -> LegacyBlobUpdate:
        return cls.from_element(parse_document(xml_text), trust, transport)

    @classmethod
    def from_element(
        cls,
        root: ET.Element,
        trust: TrustContext,
        transport: UpdateTransport,
    ) -> LegacyBlobUpdate:
        """Build an update from its root element, decrypting the embedded blob.

        Raises:
            ManifestFormatError: If attributes are missing or the blob does not
                decrypt to a valid key, IV and signature.
        """
        name = root.get("Name")
        raw_version = root.get("NewVersion")
        raw_date = root.get("PublishDate")
        blob_text = root.findtext("Blob")
        if not name or raw_version is None or raw_date is None or not blob_text:
            raise ManifestFormatError(
                "legacy update requires Name, NewVersion, PublishDate and Blob"
            )
        try:
            new_version = Version(raw_version.strip())
            publish_date = parse_timestamp(raw_date)
        except (InvalidVersion, ValueError) as e:
            raise ManifestFormatError(f"invalid NewVersion or PublishDate ({e})") from e

        try:
            ciphertext = base64.b64decode("".join(blob_text.split()), validate=True)
            plaintext = trust.create_blob_decryptor().transform(ciphertext)
        except (binascii.Error, ValueError) as e:
            raise ManifestFormatError("Blob could not be decrypted") from e
        archive_key, archive_iv, signature = unpack_blob_fields(plaintext, 3)
        try:
            validate_blob_material(archive_key, archive_iv)
        except ValueError as e:
            raise ManifestFormatError(f"Blob carries invalid key material ({e})") from e

        return cls(
            product_name=name,
            new_version=new_version,
            publish_date=publish_date,
            description=root.findtext("Description") or "",
            url=root.get("Url") or f"{name}{ARCHIVE_SUFFIX}",
            archive_key=archive_key,
            archive_iv=archive_iv,
            signature=signature,
            trust=trust,
            transport=transport,
        )

    def get_changes(self, installed_version: str | Version) -> str:
        if self.new_version > coerce_version(installed_version):
            return self.description.rstrip()
        return ""

    def sync(self, install_dir: str | Path, progress: ProgressReporter | None = None) -> SyncResult:
        """Download, verify and unpack the whole archive into a new staging directory.

        ``install_dir`` is only checked for existence: the archive always
        carries the complete build.

        Raises:
            MissingDirectoryError: If ``install_dir`` does not exist.
        """
        install_path = Path(install_dir)
        if not install_path.is_dir():
            raise MissingDirectoryError(str(install_path))
        return run_staged(self._download_into, progress, product_name=self.product_name)

    def download_files(
        self,
        install_dir: str | Path,
        progress: ProgressReporter | None = None,
    ) -> Path | None:
        """Same contract as ``UpdateManifest.download_files``."""
        return self.sync(install_dir, progress).unwrap()

    def _download_into(self, staging: Path, reporter: ProgressReporter) -> None:
        reporter.can_cancel = True
        reporter.caption = f"Downloading {self.product_name} {self.new_version}"
        reporter.maximum = UNKNOWN_MAXIMUM
        reporter.progress = 0

        with tempfile.TemporaryFile(prefix="patchfeed-archive-") as plain:
            hasher = new_hasher()
            with self._transport.stream(self.url) as chunks:
                size = decode_stream(
                    chunks,
                    self._archive_trust.create_blob_decryptor(),
                    plain,
                    hasher,
                    reporter,
                    label=self.url,
                )
            if not self._archive_trust.verify_digest(hasher.digest(), [self.signature]):
                raise SignatureVerificationError(
                    f"Signature verification failed for {self.url}",
                    details={"url": self.url, "bytes": size},
                )
            raise_if_cancelled(reporter)

            plain.seek(0)
            reporter.caption = f"Extracting {self.product_name} {self.new_version}"
            if not extract_archive(plain, staging, reporter):
                raise OperationCancelled()
        logger.debug("patchfeed.legacy.extracted", product=self.product_name, bytes=size)


def build_legacy_xml(
    product_name: str,
    new_version: str | Version,
    publish_date: datetime,
    description: str,
    blob: bytes,
    url: str | None = None,
) -> ET.Element:
    """Publisher side: the root element for a whole-archive update.

    ``blob`` is the already encrypted field block.
    """
    attrs = {
        "Name": product_name,
        "NewVersion": str(new_version),
        "PublishDate": format_timestamp(publish_date),
    }
    if url is not None:
        attrs["Url"] = url
    root = ET.Element(ROOT_TAG, attrs)
    ET.SubElement(root, "Description").text = description
    ET.SubElement(root, "Blob").text = base64.b64encode(blob).decode("ascii")
    return root
