"""patchfeed error taxonomy.

This module defines the error hierarchy for update checking and
installation, providing structured error handling with specific error
codes and context information.

Families:
    DataIntegrityError: tampered or corrupt data (bad signature, hash or
        length mismatch, truncated archive, unsafe paths). Never retried.
    PreconditionError: misuse detected before any I/O (missing
        directories, pre-existing targets, non-empty destinations).
    UpdateTransportError: the server could not be reached or refused.
    UpdateFailedError: the single user-visible failure of a sync.
"""
from __future__ import annotations

from typing import Any


class PatchfeedError(Exception):
    """Base exception for all patchfeed errors.

    Attributes:
        code: Error code following the patchfeed:<area>/<reason> pattern
        message: Human-readable error message
        details: Optional additional error context
    """

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to ``{code, message, details}`` dict."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(PatchfeedError):
    """Raised when update configuration is missing or invalid."""

    def __init__(self, reason: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            code="patchfeed:config/invalid",
            message=f"Invalid update configuration: {reason}",
            details=details or {},
        )
        self.reason = reason


class ManifestFormatError(PatchfeedError):
    """Raised when a manifest document is malformed or missing required fields."""

    def __init__(self, reason: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            code="patchfeed:manifest/malformed",
            message=f"Malformed update manifest: {reason}",
            details=details or {},
        )
        self.reason = reason


class DataIntegrityError(PatchfeedError):
    """Base class for tampered or corrupt update data.

    These errors are always fatal to the current operation and are never
    retried automatically.
    """


class SignatureVerificationError(DataIntegrityError):
    """Tampering, wrong key, or invalid/corrupted signature; see message for cause."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            code="patchfeed:integrity/signature",
            message=message,
            details=details or {},
        )


class ContentMismatchError(DataIntegrityError):
    """Raised when downloaded content does not match its descriptor.

    Covers a wrong byte count, a wrong SHA-512 digest and payloads that
    cannot be decrypted or decompressed.

    Attributes:
        path: The file whose content was rejected
        reason: Which check failed
    """

    def __init__(self, path: str, reason: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            code="patchfeed:integrity/content_mismatch",
            message=f"Downloaded content for {path} rejected: {reason}",
            details={"path": path, "reason": reason, **(details or {})},
        )
        self.path = path
        self.reason = reason


class ArchiveTruncatedError(DataIntegrityError):
    """Raised when an update archive ends early or its byte count disagrees with its header.

    Attributes:
        expected: Bytes promised by the archive header
        actual: Bytes actually read
    """

    def __init__(
        self,
        reason: str,
        expected: int | None = None,
        actual: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details_dict: dict[str, Any] = {"reason": reason}
        if expected is not None:
            details_dict["expected"] = expected
        if actual is not None:
            details_dict["actual"] = actual
        if details:
            details_dict.update(details)
        super().__init__(
            code="patchfeed:archive/truncated",
            message=f"Update archive is truncated or corrupt: {reason}",
            details=details_dict,
        )
        self.reason = reason
        self.expected = expected
        self.actual = actual


class UnsafePathError(DataIntegrityError):
    """Raised when a relative path from update data escapes its base directory."""

    def __init__(self, path: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            code="patchfeed:integrity/unsafe_path",
            message=f"Refusing path outside the target directory: {path!r}",
            details={"path": path, **(details or {})},
        )
        self.path = path


class PreconditionError(PatchfeedError):
    """Base class for caller misuse detected before any I/O."""


class MissingDirectoryError(PreconditionError):
    """Raised when a required directory does not exist."""

    def __init__(self, path: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            code="patchfeed:precondition/missing_directory",
            message=f"{path} does not exist",
            details={"path": path, **(details or {})},
        )
        self.path = path


class TargetExistsError(PreconditionError):
    """Raised when a download would overwrite an existing file.

    Callers are expected to filter with ``FileDescriptor.matches`` first.
    """

    def __init__(self, path: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            code="patchfeed:precondition/target_exists",
            message=f"{path} already exists",
            details={"path": path, **(details or {})},
        )
        self.path = path


class DestinationNotEmptyError(PreconditionError):
    """Raised when an archive would be extracted over existing content."""

    def __init__(self, path: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            code="patchfeed:precondition/destination_not_empty",
            message=f"The destination directory cannot have existing files: {path}",
            details={"path": path, **(details or {})},
        )
        self.path = path


class UpdateTransportError(PatchfeedError):
    """Raised when the update server cannot be reached or answers with an error.

    Attributes:
        url: The requested URL (credentials stripped)
        status_code: HTTP status, when a response was received
    """

    def __init__(
        self,
        url: str,
        reason: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details_dict: dict[str, Any] = {"url": url, "reason": reason}
        if status_code is not None:
            details_dict["status_code"] = status_code
        if details:
            details_dict.update(details)
        super().__init__(
            code="patchfeed:transport/request_failed",
            message=f"Request to {url} failed: {reason}",
            details=details_dict,
        )
        self.url = url
        self.status_code = status_code


class UpdateFailedError(PatchfeedError):
    """Raised when downloading an update fails for any reason other than cancellation.

    The staging directory has already been removed when this is raised.

    Attributes:
        cause: The original exception
    """

    def __init__(self, cause: BaseException, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            code="patchfeed:update/failed",
            message="An error occurred while downloading an update",
            details={
                "cause": str(cause),
                "cause_type": type(cause).__name__,
                **(details or {}),
            },
        )
        self.cause = cause
