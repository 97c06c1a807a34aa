"""Relative-path handling shared by manifests and archives.

Relative paths travel over the wire with ``/`` separators. Older archives
used ``\\``; both are accepted on input and ``/`` is always written.
"""

from __future__ import annotations

import shutil
from pathlib import Path, PurePosixPath
from urllib.parse import unquote

from patchfeed.errors import UnsafePathError


def normalize_relative_path(relative_path: str) -> str:
    """Return ``relative_path`` with ``/`` separators and no leading ``./``.

    Raises:
        UnsafePathError: If the path is empty, absolute, or climbs out with ``..``.
    """
    candidate = relative_path.replace("\\", "/")
    while candidate.startswith("./"):
        candidate = candidate[2:]
    pure = PurePosixPath(candidate)
    if (
        not pure.parts
        or pure.is_absolute()
        or ".." in pure.parts
        or pure.parts[0].endswith(":")
    ):
        raise UnsafePathError(relative_path)
    return pure.as_posix()


def safe_join(base: str | Path, relative_path: str) -> Path:
    """Join ``relative_path`` onto ``base``, refusing anything that escapes it."""
    base_path = Path(base)
    joined = base_path / normalize_relative_path(relative_path)
    resolved_base = base_path.resolve()
    if not joined.resolve().is_relative_to(resolved_base):
        raise UnsafePathError(relative_path)
    return joined


def relative_uri_path(root: str | Path, path: str | Path) -> str:
    """Relativize ``path`` against ``root`` through their ``file:`` URIs.

    Working on URIs rather than OS paths keeps the result stable across
    separator and drive-letter quirks.
    """
    root_uri = Path(root).resolve().as_uri().rstrip("/") + "/"
    path_uri = Path(path).resolve().as_uri()
    if not path_uri.startswith(root_uri):
        raise UnsafePathError(str(path))
    return unquote(path_uri[len(root_uri):])


def remove_tree(path: str | Path) -> None:
    """Delete a directory tree if it exists."""
    target = Path(path)
    if target.exists():
        shutil.rmtree(target)


def clear_directory(path: str | Path) -> None:
    """Delete everything inside ``path`` but keep the directory itself."""
    for child in Path(path).iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()
