"""Version history entries carried by an incremental manifest.

Each ``<Version>`` element names a release, its publish date and its
changelog text:

    <Versions>
      <Version Version="2.1.0" PublishDate="2024-05-01T10:00:00Z">Fixed printing.</Version>
      <Version Version="2.0.0" PublishDate="2024-03-01T09:00:00Z">New ledger view.</Version>
    </Versions>
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from xml.etree import ElementTree as ET

from packaging.version import InvalidVersion, Version
from pydantic import Field, ValidationError, field_validator

from patchfeed.errors import ManifestFormatError
from patchfeed.models.base import PatchfeedBaseModel
from patchfeed.utils.timestamps import ensure_utc, format_timestamp, parse_timestamp

VERSION_TAG = "Version"


class VersionEntry(PatchfeedBaseModel):
    """One released version.

    Attributes:
        version: Release number, compared with PEP 440 ordering.
        publish_date: When the release was published (aware, UTC).
        changes: Free-form changelog text.
    """

    version: Version
    publish_date: datetime
    changes: str = Field(default="")

    @field_validator("version", mode="before")
    @classmethod
    def _coerce_version(cls, v: object) -> Version:
        if isinstance(v, Version):
            return v
        try:
            return Version(str(v).strip())
        except InvalidVersion as e:
            raise ValueError(f"Invalid version number: {v!r}") from e

    @field_validator("publish_date", mode="before")
    @classmethod
    def _coerce_publish_date(cls, v: object) -> datetime:
        if not isinstance(v, datetime):
            return parse_timestamp(str(v))
        try:
            return ensure_utc(v)
        except OverflowError as e:
            raise ValueError(f"publish date out of range in UTC: {v!r}") from e

    @classmethod
    def from_xml(cls, element: ET.Element) -> VersionEntry:
        """Build an entry from a ``<Version>`` element.

        Raises:
            ManifestFormatError: If an attribute is missing or invalid.
        """
        version = element.get("Version")
        publish_date = element.get("PublishDate")
        if version is None or publish_date is None:
            raise ManifestFormatError("Version element requires Version and PublishDate attributes")
        try:
            return cls(version=version, publish_date=publish_date, changes=element.text or "")
        except ValidationError as e:
            raise ManifestFormatError(
                f"invalid Version element {version!r}",
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e

    def to_xml(self) -> ET.Element:
        element = ET.Element(
            VERSION_TAG,
            {"Version": str(self.version), "PublishDate": format_timestamp(self.publish_date)},
        )
        element.text = self.changes
        return element


def sort_versions(entries: Iterable[VersionEntry]) -> tuple[VersionEntry, ...]:
    """Return ``entries`` newest first.

    Raises:
        ManifestFormatError: If there are no entries or a version number repeats.
    """
    ordered = tuple(sorted(entries, key=lambda e: e.version, reverse=True))
    if not ordered:
        raise ManifestFormatError("manifest lists no versions")
    for newer, older in zip(ordered, ordered[1:]):
        if newer.version == older.version:
            raise ManifestFormatError(f"duplicate version {newer.version}")
    return ordered
