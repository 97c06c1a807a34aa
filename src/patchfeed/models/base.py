"""Base Pydantic model configuration for patchfeed models.

All patchfeed models inherit from PatchfeedBaseModel to ensure consistent behavior:
- Immutability (frozen=True): manifests are discarded after one use, never edited
- Strict validation (extra="forbid") to catch typos and invalid fields
"""

from pydantic import BaseModel, ConfigDict


class PatchfeedBaseModel(BaseModel):
    """Base model for patchfeed value objects.

    Example:
        >>> class MyModel(PatchfeedBaseModel):
        ...     name: str
        >>> obj = MyModel(name="test")
        >>> obj.name = "other"  # Raises ValidationError (frozen)
        Traceback (most recent call last):
        ...
        pydantic_core._pydantic_core.ValidationError: ...
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
        validate_default=True,
        # packaging.version.Version and similar non-pydantic field types
        arbitrary_types_allowed=True,
    )
