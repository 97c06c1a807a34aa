"""Publisher tools: turn a build directory into an update feed.

The output directory is uploaded as-is under the feed's base URI:

    {output}/{product}.xml          signed manifest
    {output}/files/<relative path>  each file, gzip then AES-CBC

or, for whole-archive updates:

    {output}/{product}.xml          legacy manifest with the encrypted key blob
    {output}/{product}.bin          the encrypted archive
"""

from __future__ import annotations

import tempfile
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote, unquote

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from packaging.version import Version

from patchfeed.archive import list_tree, write_archive
from patchfeed.crypto.keys import generate_blob_material
from patchfeed.crypto.signing import hash_stream, sign_digest
from patchfeed.crypto.trust import TrustContext
from patchfeed.files import FileDescriptor
from patchfeed.legacy import ARCHIVE_SUFFIX, build_legacy_xml, pack_blob_fields
from patchfeed.manifest import build_manifest_xml, parse_document, serialize_document
from patchfeed.models.versions import VersionEntry
from patchfeed.observability import get_logger
from patchfeed.transport.pipeline import encode_stream
from patchfeed.utils.paths import relative_uri_path, safe_join

logger = get_logger(__name__)

DEFAULT_URL_PREFIX = "files/"


def describe_tree(
    source_dir: str | Path,
    signing_keys: Iterable[RSAPrivateKey],
    url_prefix: str = DEFAULT_URL_PREFIX,
) -> list[FileDescriptor]:
    """Hash and sign every file under ``source_dir``, in sorted order."""
    keys = list(signing_keys)
    source = Path(source_dir)
    return [
        FileDescriptor.create(source, relative, url_prefix + quote(relative), keys)
        for relative in (relative_uri_path(source, p) for p in list_tree(source))
    ]


def encode_file(path: str | Path, trust: TrustContext, target: str | Path) -> int:
    """Gzip and encrypt ``path`` into ``target``; return the bytes written."""
    target_path = Path(target)
    target_path.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    with open(path, "rb") as source, open(target_path, "wb") as sink:
        for chunk in encode_stream(source, trust.create_blob_encryptor()):
            sink.write(chunk)
            written += len(chunk)
    return written


def read_version_history(manifest_file: str | Path) -> list[VersionEntry]:
    """Version entries of a previously published incremental manifest."""
    root = parse_document(Path(manifest_file).read_bytes())
    return [VersionEntry.from_xml(node) for node in root.iterfind("Versions/Version")]


def publish_tree(
    source_dir: str | Path,
    output_dir: str | Path,
    product_name: str,
    versions: Iterable[VersionEntry],
    signing_keys: Iterable[RSAPrivateKey],
    trust: TrustContext,
) -> Path:
    """Write an incremental update feed for ``source_dir``.

    Returns:
        Path of the written ``{product_name}.xml``.
    """
    source = Path(source_dir)
    output = Path(output_dir)
    output.mkdir(parents=True, exist_ok=True)

    descriptors = describe_tree(source, signing_keys)
    for descriptor in descriptors:
        encode_file(
            safe_join(source, descriptor.relative_path),
            trust,
            safe_join(output, unquote(descriptor.remote_url)),
        )

    manifest_file = output / f"{product_name}.xml"
    root = build_manifest_xml(product_name, versions, descriptors)
    manifest_file.write_bytes(serialize_document(root))
    logger.info(
        "patchfeed.publish.tree_published",
        product=product_name,
        files=len(descriptors),
        manifest=str(manifest_file),
    )
    return manifest_file


def publish_legacy_blob(
    source_dir: str | Path,
    output_dir: str | Path,
    product_name: str,
    version: str | Version,
    description: str,
    signing_key: RSAPrivateKey,
    trust: TrustContext,
    archive_key: bytes | None = None,
    archive_iv: bytes | None = None,
) -> Path:
    """Write a whole-archive update for ``source_dir``.

    The archive is encrypted with ``archive_key``/``archive_iv`` (random when
    omitted); those and the archive signature travel in the manifest's blob,
    encrypted with the pre-shared key in ``trust``.

    Returns:
        Path of the written ``{product_name}.xml``.
    """
    if archive_key is None or archive_iv is None:
        archive_key, archive_iv = generate_blob_material()
    archive_trust = trust.with_blob_material(archive_key, archive_iv)
    output = Path(output_dir)
    output.mkdir(parents=True, exist_ok=True)
    archive_file = output / f"{product_name}{ARCHIVE_SUFFIX}"

    with tempfile.TemporaryFile(prefix="patchfeed-archive-") as plain:
        write_archive(plain, source_dir)
        plain.seek(0)
        signature = sign_digest(hash_stream(plain), signing_key)
        plain.seek(0)
        with open(archive_file, "wb") as sink:
            for chunk in encode_stream(plain, archive_trust.create_blob_encryptor()):
                sink.write(chunk)

    fields = pack_blob_fields(archive_key, archive_iv, signature)
    blob = trust.create_blob_encryptor().transform(fields)
    root = build_legacy_xml(
        product_name,
        version,
        datetime.now(timezone.utc),
        description,
        blob,
    )
    manifest_file = output / f"{product_name}.xml"
    manifest_file.write_bytes(serialize_document(root))
    logger.info(
        "patchfeed.publish.blob_published",
        product=product_name,
        version=str(version),
        archive=str(archive_file),
    )
    return manifest_file
