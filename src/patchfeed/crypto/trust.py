"""The trust context: what a client believes about its update server.

A TrustContext is provisioned once from local configuration, never from the
network, and is shared read-only by the fetcher, the manifest and every
file descriptor. It holds:

- the publisher's RSA public key, used only to verify signatures;
- a pre-shared AES key and IV, used only to decrypt update payloads.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from cryptography.hazmat.primitives import padding as sym_padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from cryptography.hazmat.primitives.ciphers import Cipher, CipherContext, algorithms, modes

from patchfeed.crypto.keys import BLOB_IV_SIZE, VALID_BLOB_KEY_SIZES
from patchfeed.crypto.signing import verify_any

_AES_BLOCK_BITS = 128


class BlobTransform:
    """Streaming AES-CBC transform with PKCS7 padding.

    Feed chunks through ``update`` and call ``finalize`` once at the end; the
    padding layer holds back the last block until then.
    """

    def __init__(self, cipher: Cipher[modes.CBC], *, decrypt: bool) -> None:
        self._decrypt = decrypt
        self._cipher_ctx: CipherContext
        if decrypt:
            self._cipher_ctx = cipher.decryptor()
            self._padding_ctx = sym_padding.PKCS7(_AES_BLOCK_BITS).unpadder()
        else:
            self._cipher_ctx = cipher.encryptor()
            self._padding_ctx = sym_padding.PKCS7(_AES_BLOCK_BITS).padder()

    def update(self, data: bytes) -> bytes:
        if self._decrypt:
            return self._padding_ctx.update(self._cipher_ctx.update(data))
        return self._cipher_ctx.update(self._padding_ctx.update(data))

    def finalize(self) -> bytes:
        """Flush the final block. Raises ValueError on bad padding when decrypting."""
        if self._decrypt:
            tail = self._padding_ctx.update(self._cipher_ctx.finalize())
            return tail + self._padding_ctx.finalize()
        tail = self._cipher_ctx.update(self._padding_ctx.finalize())
        return tail + self._cipher_ctx.finalize()

    def transform(self, data: bytes) -> bytes:
        """One-shot helper for small payloads."""
        return self.update(data) + self.finalize()


def validate_blob_material(key: bytes, iv: bytes) -> None:
    if len(key) not in VALID_BLOB_KEY_SIZES:
        raise ValueError(f"AES key must be 16, 24 or 32 bytes, got {len(key)}")
    if len(iv) != BLOB_IV_SIZE:
        raise ValueError(f"AES IV must be {BLOB_IV_SIZE} bytes, got {len(iv)}")


@dataclass(frozen=True)
class TrustContext:
    """Immutable verification key plus pre-shared payload key material.

    Attributes:
        public_key: Publisher's RSA public key (signature verification only).
        blob_key: AES key for update payloads (confidentiality only).
        blob_iv: AES-CBC initialization vector matching ``blob_key``.
    """

    public_key: RSAPublicKey
    blob_key: bytes
    blob_iv: bytes

    def __post_init__(self) -> None:
        validate_blob_material(self.blob_key, self.blob_iv)

    def __repr__(self) -> str:
        key_size = self.public_key.key_size
        return f"TrustContext(public_key=<RSA {key_size}>, blob_key=***, blob_iv=***)"

    def verify_digest(self, digest: bytes, signatures: Iterable[bytes]) -> bool:
        return verify_any(digest, signatures, self.public_key)

    def _cipher(self) -> Cipher[modes.CBC]:
        return Cipher(algorithms.AES(self.blob_key), modes.CBC(self.blob_iv))

    def create_blob_decryptor(self) -> BlobTransform:
        return BlobTransform(self._cipher(), decrypt=True)

    def create_blob_encryptor(self) -> BlobTransform:
        return BlobTransform(self._cipher(), decrypt=False)

    def with_blob_material(self, key: bytes, iv: bytes) -> TrustContext:
        """Same verification key, different payload key (legacy archives carry their own)."""
        return TrustContext(public_key=self.public_key, blob_key=key, blob_iv=iv)
