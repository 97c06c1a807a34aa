"""RSA signing keys and pre-shared AES material: generation, serialization, loading."""

from __future__ import annotations

import base64
import binascii
import os
from datetime import datetime, timezone
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import (
    RSAPrivateKey,
    RSAPublicKey,
    generate_private_key,
)
from cryptography.hazmat.primitives.serialization import (
    load_pem_private_key,
    load_pem_public_key,
)
from pydantic import BaseModel

from patchfeed.observability import get_logger

logger = get_logger(__name__)

DEFAULT_RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
# AES-256 key; the IV is one AES block.
BLOB_KEY_SIZE = 32
BLOB_IV_SIZE = 16
VALID_BLOB_KEY_SIZES = frozenset({16, 24, 32})
# Age in days after which to log a key rotation warning.
KEY_ROTATION_WARNING_DAYS = 365
KEY_FILE_RECOMMENDED_MODE = 0o600


class KeyMetadata(BaseModel):
    """When a signing key was created; taken from the key file's mtime."""

    created_at: datetime


def generate_signing_keypair(
    key_size: int = DEFAULT_RSA_KEY_SIZE,
) -> tuple[RSAPrivateKey, RSAPublicKey]:
    private_key = generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=key_size)
    return (private_key, private_key.public_key())


def serialize_private_key(key: RSAPrivateKey) -> bytes:
    """Unencrypted PKCS#8 PEM, as read by ``load_private_key_from_pem``."""
    pem: bytes = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return pem


def serialize_public_key(key: RSAPublicKey) -> bytes:
    """PEM (SubjectPublicKeyInfo)."""
    pem: bytes = key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return pem


def load_public_key_from_pem(pem: bytes | str) -> RSAPublicKey:
    """From PEM. Raises ValueError if invalid or not RSA."""
    data = pem.encode("ascii") if isinstance(pem, str) else pem
    key = load_pem_public_key(data)
    if not isinstance(key, RSAPublicKey):
        raise ValueError("Key is not an RSA public key")
    return key


def load_private_key_from_pem(pem: bytes) -> RSAPrivateKey:
    """From PEM. Raises ValueError if invalid or not RSA."""
    key = load_pem_private_key(pem, password=None)
    if not isinstance(key, RSAPrivateKey):
        raise ValueError("Key is not an RSA private key")
    return key


def get_key_metadata_from_file(path: str | Path) -> KeyMetadata:
    mtime = Path(path).stat().st_mtime
    return KeyMetadata(created_at=datetime.fromtimestamp(mtime, tz=timezone.utc))


def warn_if_key_old(
    metadata: KeyMetadata,
    max_age_days: int = KEY_ROTATION_WARNING_DAYS,
) -> None:
    age_days = (datetime.now(timezone.utc) - metadata.created_at).days
    if age_days >= max_age_days:
        logger.warning(
            "patchfeed.keys.rotation_recommended",
            age_days=age_days,
            max_age_days=max_age_days,
            created_at=metadata.created_at.isoformat(),
        )


def warn_if_key_file_permissions_loose(path: Path) -> None:
    """Log a warning when anyone but the owner can read the signing key file."""
    try:
        mode = path.stat().st_mode
    except OSError:
        return
    if (mode & 0o77) != 0:
        logger.warning(
            "patchfeed.keys.file_permissions_loose",
            path=str(path),
            mode=oct(mode),
            recommended=oct(KEY_FILE_RECOMMENDED_MODE),
        )


def load_private_key_from_file_sync(path: str | Path) -> RSAPrivateKey:
    """Load the publisher's RSA private key from a PEM file.

    Logs a security warning if the file is readable by group or others and a
    rotation warning if it is older than KEY_ROTATION_WARNING_DAYS.
    """
    path = Path(path)
    warn_if_key_file_permissions_loose(path)
    key = load_private_key_from_pem(path.read_bytes())
    warn_if_key_old(get_key_metadata_from_file(path))
    return key


def load_private_key_from_env(var_name: str) -> RSAPrivateKey:
    """Load a PEM private key held in environment variable ``var_name`` (e.g. in CI).

    Raises:
        ValueError: If the variable is unset or empty, or the key is not RSA.
    """
    value = os.environ.get(var_name)
    if not value:
        raise ValueError(f"Environment variable {var_name!r} is not set or empty")
    return load_private_key_from_pem(value.encode("utf-8"))


def generate_blob_material() -> tuple[bytes, bytes]:
    """Fresh random AES key and IV for file and blob encryption."""
    return (os.urandom(BLOB_KEY_SIZE), os.urandom(BLOB_IV_SIZE))


def decode_blob_material(b64: str, *, name: str = "blob key") -> bytes:
    """Decode base64 key or IV material. Raises ValueError on bad encoding."""
    try:
        return base64.b64decode(b64.strip(), validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 for {name}: {e}") from e


def encode_blob_material(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")
