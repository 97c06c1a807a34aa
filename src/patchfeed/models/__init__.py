"""patchfeed data models.

- base: frozen pydantic base model
- enums: UpdateStrategy and SyncStatus
- versions: VersionEntry and version ordering
"""

from patchfeed.models.base import PatchfeedBaseModel
from patchfeed.models.enums import SyncStatus, UpdateStrategy
from patchfeed.models.versions import VersionEntry, sort_versions

__all__ = [
    "PatchfeedBaseModel",
    "SyncStatus",
    "UpdateStrategy",
    "VersionEntry",
    "sort_versions",
]
