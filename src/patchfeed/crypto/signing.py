"""SHA-512 file hashing and RSA signatures over pre-computed digests.

Update files are signed by hash: the publisher signs the 64-byte SHA-512
digest (PKCS#1 v1.5, pre-hashed) so that clients can verify a descriptor
without touching the file itself.
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Iterable
from pathlib import Path
from typing import BinaryIO

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, utils
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

HASH_NAME = "sha512"
DIGEST_SIZE = 64
HASH_CHUNK_SIZE = 64 * 1024


def new_hasher() -> "hashlib._Hash":
    return hashlib.new(HASH_NAME)


def hash_stream(stream: BinaryIO, chunk_size: int = HASH_CHUNK_SIZE) -> bytes:
    hasher = new_hasher()
    for chunk in iter(lambda: stream.read(chunk_size), b""):
        hasher.update(chunk)
    return hasher.digest()


def hash_file(path: str | Path) -> bytes:
    with open(path, "rb") as f:
        return hash_stream(f)


def digests_equal(a: bytes, b: bytes) -> bool:
    return hmac.compare_digest(a, b)


def sign_digest(digest: bytes, private_key: RSAPrivateKey) -> bytes:
    """Sign a SHA-512 digest. Raises ValueError if ``digest`` is not 64 bytes."""
    if len(digest) != DIGEST_SIZE:
        raise ValueError(f"SHA-512 digest must be {DIGEST_SIZE} bytes, got {len(digest)}")
    signature: bytes = private_key.sign(
        digest,
        padding.PKCS1v15(),
        utils.Prehashed(hashes.SHA512()),
    )
    return signature


def verify_digest(digest: bytes, signature: bytes, public_key: RSAPublicKey) -> bool:
    """True iff ``signature`` is a valid signature of ``digest`` under ``public_key``."""
    if len(digest) != DIGEST_SIZE:
        return False
    try:
        public_key.verify(
            signature,
            digest,
            padding.PKCS1v15(),
            utils.Prehashed(hashes.SHA512()),
        )
    except InvalidSignature:
        return False
    return True


def verify_any(digest: bytes, signatures: Iterable[bytes], public_key: RSAPublicKey) -> bool:
    """True if at least one of ``signatures`` verifies (publishers may sign with several keys)."""
    return any(verify_digest(digest, s, public_key) for s in signatures)
