"""Streaming codec for update payloads.

Files are published as gzip, then AES-CBC encrypted. Clients undo both in
a single pass over the HTTP response:

    ciphertext chunks -> decrypt -> gunzip -> (SHA-512, write to disk)

Nothing is buffered beyond one chunk plus the cipher's last block, and
cancellation is polled once per chunk.
"""

from __future__ import annotations

import zlib
from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING, BinaryIO

from patchfeed.crypto.trust import BlobTransform
from patchfeed.errors import ContentMismatchError
from patchfeed.progress import ProgressReporter, raise_if_cancelled

if TYPE_CHECKING:
    import hashlib


# zlib window bits for the gzip container (header + CRC trailer)
GZIP_WBITS = 16 + zlib.MAX_WBITS
# Gzip compression level (1-9, higher = better compression but slower)
GZIP_COMPRESSION_LEVEL = 6
ENCODE_CHUNK_SIZE = 64 * 1024


def decode_stream(
    chunks: Iterable[bytes],
    decryptor: BlobTransform,
    sink: BinaryIO,
    hasher: "hashlib._Hash",
    progress: ProgressReporter,
    *,
    expected_length: int | None = None,
    label: str = "<stream>",
) -> int:
    """Decrypt, decompress, hash and write a payload; return the plaintext byte count.

    Args:
        chunks: Ciphertext chunks, typically from ``UpdateTransport.stream``.
        decryptor: Fresh transform from ``TrustContext.create_blob_decryptor``.
        sink: Writable binary file receiving the plaintext.
        hasher: Hash object updated with every plaintext byte.
        progress: Receives the running plaintext byte count; polled for cancellation.
        expected_length: When given, output beyond this many bytes fails early.
        label: Name used in error messages (usually the relative path).

    Raises:
        OperationCancelled: If ``progress.was_canceled`` is observed.
        ContentMismatchError: If the payload cannot be decrypted or decompressed,
            or grows past ``expected_length``.
    """
    decompressor = zlib.decompressobj(GZIP_WBITS)
    written = 0

    def emit(data: bytes) -> None:
        nonlocal written
        if not data:
            return
        written += len(data)
        if expected_length is not None and written > expected_length:
            raise ContentMismatchError(
                label,
                "payload is longer than declared",
                details={"expected": expected_length},
            )
        hasher.update(data)
        sink.write(data)
        progress.progress = written

    def inflate(data: bytes, final: bool = False) -> bytes:
        try:
            out = decompressor.decompress(data)
            return out + decompressor.flush() if final else out
        except zlib.error as e:
            raise ContentMismatchError(label, f"payload is not valid gzip ({e})") from e

    for chunk in chunks:
        raise_if_cancelled(progress)
        emit(inflate(_decrypt(decryptor, chunk, label)))
    raise_if_cancelled(progress)
    emit(inflate(_decrypt(decryptor, None, label), final=True))

    if not decompressor.eof:
        raise ContentMismatchError(label, "compressed payload ended early")
    return written


def _decrypt(decryptor: BlobTransform, chunk: bytes | None, label: str) -> bytes:
    """``update(chunk)``, or ``finalize()`` when ``chunk`` is None."""
    try:
        return decryptor.finalize() if chunk is None else decryptor.update(chunk)
    except ValueError as e:
        # cryptography reports bad PKCS7 padding and partial blocks as ValueError
        raise ContentMismatchError(label, f"payload could not be decrypted ({e})") from e


def encode_stream(
    source: BinaryIO,
    encryptor: BlobTransform,
    chunk_size: int = ENCODE_CHUNK_SIZE,
) -> Iterator[bytes]:
    """Publisher side: gzip then encrypt ``source``, yielding ciphertext chunks."""
    compressor = zlib.compressobj(GZIP_COMPRESSION_LEVEL, zlib.DEFLATED, GZIP_WBITS)
    for block in iter(lambda: source.read(chunk_size), b""):
        compressed = compressor.compress(block)
        if compressed:
            out = encryptor.update(compressed)
            if out:
                yield out
    tail = encryptor.update(compressor.flush()) + encryptor.finalize()
    if tail:
        yield tail


def encode_bytes(data: bytes, encryptor: BlobTransform) -> bytes:
    """One-shot ``encode_stream`` for in-memory payloads."""
    compressed = zlib.compress(data, GZIP_COMPRESSION_LEVEL, wbits=GZIP_WBITS)
    return encryptor.transform(compressed)
