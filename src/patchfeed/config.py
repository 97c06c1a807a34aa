"""Client configuration: where updates live and what to trust.

Configuration comes from a JSON file or from environment variables, never
from the update server itself.

JSON file (explicit path, or ``PATCHFEED_CONFIG``):

    {
      "base_uri": "https://updates.example.com/feed/",
      "public_key_file": "/etc/billing/update-signing.pub.pem",
      "blob_key": "base64 AES key",
      "blob_iv": "base64 AES IV",
      "timeout_seconds": 30
    }

Environment variables (used when no file is configured):
    PATCHFEED_BASE_URI, PATCHFEED_PUBLIC_KEY_FILE, PATCHFEED_BLOB_KEY,
    PATCHFEED_BLOB_IV, PATCHFEED_TIMEOUT
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

from cryptography.exceptions import UnsupportedAlgorithm
from pydantic import Field, ValidationError, field_validator, model_validator

from patchfeed.crypto.keys import decode_blob_material, load_public_key_from_pem
from patchfeed.crypto.trust import TrustContext
from patchfeed.errors import ConfigurationError
from patchfeed.models.base import PatchfeedBaseModel
from patchfeed.transport.http import DEFAULT_CHUNK_SIZE, DEFAULT_TIMEOUT

ENV_CONFIG = "PATCHFEED_CONFIG"
ENV_BASE_URI = "PATCHFEED_BASE_URI"
ENV_PUBLIC_KEY_FILE = "PATCHFEED_PUBLIC_KEY_FILE"
ENV_BLOB_KEY = "PATCHFEED_BLOB_KEY"
ENV_BLOB_IV = "PATCHFEED_BLOB_IV"
ENV_TIMEOUT = "PATCHFEED_TIMEOUT"


class UpdateConfig(PatchfeedBaseModel):
    """Validated client configuration.

    Attributes:
        base_uri: Absolute http(s) URI of the update feed.
        public_key_pem: Publisher's RSA public key, inline PEM.
        public_key_file: Path to the publisher's public key PEM (if not inline).
        blob_key: Base64 pre-shared AES key for update payloads.
        blob_iv: Base64 AES-CBC IV matching ``blob_key``.
        timeout_seconds: Per-request HTTP timeout.
        chunk_size: Download chunk size in bytes.
    """

    base_uri: str
    public_key_pem: Optional[str] = None
    public_key_file: Optional[Path] = None
    blob_key: str = Field(repr=False)
    blob_iv: str = Field(repr=False)
    timeout_seconds: float = Field(default=DEFAULT_TIMEOUT, gt=0)
    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, gt=0)

    @field_validator("base_uri")
    @classmethod
    def _check_base_uri(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"base_uri must be an absolute http(s) URI, got {v!r}")
        return v

    @field_validator("blob_key", "blob_iv")
    @classmethod
    def _check_base64(cls, v: str) -> str:
        decode_blob_material(v)
        return v

    @model_validator(mode="after")
    def _check_public_key_source(self) -> UpdateConfig:
        if (self.public_key_pem is None) == (self.public_key_file is None):
            raise ValueError("exactly one of public_key_pem or public_key_file is required")
        return self

    def load_public_key_pem(self) -> bytes:
        if self.public_key_pem is not None:
            return self.public_key_pem.encode("utf-8")
        assert self.public_key_file is not None
        try:
            return self.public_key_file.read_bytes()
        except OSError as e:
            raise ConfigurationError(
                f"cannot read public key file {self.public_key_file}",
                details={"error": str(e)},
            ) from e

    def trust_context(self) -> TrustContext:
        """Build the TrustContext this configuration describes.

        Raises:
            ConfigurationError: If the key or the AES material is unusable.
        """
        try:
            return TrustContext(
                public_key=load_public_key_from_pem(self.load_public_key_pem()),
                blob_key=decode_blob_material(self.blob_key, name="blob_key"),
                blob_iv=decode_blob_material(self.blob_iv, name="blob_iv"),
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise ConfigurationError(str(e)) from e


def load_config(path: str | Path | None = None) -> UpdateConfig:
    """Load configuration from ``path``, ``$PATCHFEED_CONFIG``, or the environment.

    Raises:
        ConfigurationError: If the source is unreadable or a value is invalid.
    """
    source = path or os.environ.get(ENV_CONFIG)
    raw = _read_file(Path(source)) if source else _read_env()
    try:
        return UpdateConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(
            "; ".join(_describe(err) for err in e.errors()),
            details={"source": str(source) if source else "environment"},
        ) from e


def _read_file(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"cannot read {path}", details={"error": str(e)}) from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{path} is not valid JSON", details={"error": str(e)}) from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a JSON object")
    key_file = data.get("public_key_file")
    if isinstance(key_file, str) and not Path(key_file).is_absolute():
        data["public_key_file"] = str(path.parent / key_file)
    return data


def _read_env() -> dict[str, Any]:
    mapping = {
        "base_uri": ENV_BASE_URI,
        "public_key_file": ENV_PUBLIC_KEY_FILE,
        "blob_key": ENV_BLOB_KEY,
        "blob_iv": ENV_BLOB_IV,
        "timeout_seconds": ENV_TIMEOUT,
    }
    raw = {field: os.environ[var] for field, var in mapping.items() if os.environ.get(var)}
    missing = [mapping[f] for f in ("base_uri", "blob_key", "blob_iv") if f not in raw]
    if missing:
        raise ConfigurationError(
            f"no config file given and {', '.join(missing)} not set",
            details={"missing": missing},
        )
    return raw


def _describe(error: Any) -> str:
    location = ".".join(str(part) for part in error.get("loc", ())) or "config"
    return f"{location}: {error.get('msg', 'invalid value')}"
