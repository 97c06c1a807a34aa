"""Binary container bundling a whole file tree into one stream.

Layout (little-endian, fixed width):

    Header  total_bytes: int64, file_count: int32
    Entry   path_len: int32, path: utf-8[path_len], file_len: int64, data: bytes[file_len]

``total_bytes`` is the sum of every ``file_len``. Entry paths are relative
with ``/`` separators; archives written by older publishers may use ``\\``.

The container carries no checksum. Truncated data and inconsistent length
fields are detected, but a flipped byte inside file data is not. Verify the
archive separately when integrity matters; whole-archive updates carry a
signature over its SHA-512.

Example:
    >>> with open("update.pak", "wb") as f:
    ...     write_archive(f, "build/")
    >>> with open("update.pak", "rb") as f:
    ...     extract_archive(f, "staging/")
"""

from __future__ import annotations

import struct
from collections.abc import Iterable
from pathlib import Path
from typing import BinaryIO

from patchfeed.errors import ArchiveTruncatedError, DestinationNotEmptyError
from patchfeed.observability import get_logger
from patchfeed.progress import (
    EmptyProgressReporter,
    OperationCancelled,
    ProgressReporter,
    raise_if_cancelled,
)
from patchfeed.utils.paths import (
    clear_directory,
    normalize_relative_path,
    relative_uri_path,
    remove_tree,
    safe_join,
)

logger = get_logger(__name__)

HEADER = struct.Struct("<qi")
PATH_LENGTH = struct.Struct("<i")
FILE_LENGTH = struct.Struct("<q")
COPY_CHUNK_SIZE = 64 * 1024
# Longest entry path accepted when reading
MAX_PATH_BYTES = 32 * 1024


def list_tree(root: str | Path) -> list[Path]:
    """All regular files under ``root``, recursively, in sorted order."""
    return sorted(p for p in Path(root).rglob("*") if p.is_file())


def write_archive(
    target: BinaryIO,
    root: str | Path,
    progress: ProgressReporter | None = None,
    paths: Iterable[str | Path] | None = None,
) -> bool:
    """Write the files under ``root`` (or just ``paths``) to ``target``.

    Args:
        target: Writable binary stream.
        root: Directory entry paths are made relative to.
        progress: Receives cumulative bytes against the total; polled once per file.
        paths: Files to include, absolute or relative to ``root``. Defaults to
            the whole tree.

    Returns:
        True when complete; False if cancelled, in which case ``target`` holds
        a truncated archive that should be discarded.
    """
    progress = progress or EmptyProgressReporter()
    root_path = Path(root)
    if paths is None:
        files = list_tree(root_path)
    else:
        files = [p if Path(p).is_absolute() else root_path / p for p in map(Path, paths)]

    entries = [(relative_uri_path(root_path, f), f, f.stat().st_size) for f in files]
    total = sum(size for _, _, size in entries)

    progress.maximum = total
    progress.progress = 0
    target.write(HEADER.pack(total, len(entries)))

    written = 0
    for relative, path, size in entries:
        if progress.was_canceled:
            logger.info("patchfeed.archive.write_cancelled", root=str(root_path), written=written)
            return False
        encoded = relative.encode("utf-8")
        target.write(PATH_LENGTH.pack(len(encoded)))
        target.write(encoded)
        target.write(FILE_LENGTH.pack(size))
        with open(path, "rb") as source:
            _copy_exact(source, target, size, progress, offset=written, label=relative)
        written += size

    logger.info(
        "patchfeed.archive.written",
        root=str(root_path),
        files=len(entries),
        bytes=total,
    )
    return True


def extract_archive(
    source: BinaryIO,
    destination: str | Path,
    progress: ProgressReporter | None = None,
) -> bool:
    """Unpack an archive into ``destination``.

    ``destination`` must be absent or empty; missing parents are created. On
    any failure or cancellation everything extracted is removed, along with
    any directories created for ``destination``, so the filesystem is left as
    found.

    Returns:
        True when complete, False if cancelled.

    Raises:
        DestinationNotEmptyError: If ``destination`` already has content.
        ArchiveTruncatedError: On a short read, an invalid header or entry
            field, or when the bytes read disagree with the header total.
        UnsafePathError: If an entry path escapes ``destination``.
    """
    progress = progress or EmptyProgressReporter()
    dest = Path(destination)
    existed = dest.exists()
    if existed and any(dest.iterdir()):
        raise DestinationNotEmptyError(str(dest))
    created_root = _topmost_missing(dest)

    try:
        dest.mkdir(parents=True, exist_ok=True)
        total, count = _read_struct(source, HEADER, "header")
        if total < 0 or count < 0:
            raise ArchiveTruncatedError("negative size in header", expected=total)
        progress.maximum = total
        progress.progress = 0

        read = 0
        for _ in range(count):
            raise_if_cancelled(progress)
            relative = _read_entry_path(source)
            target = safe_join(dest, relative)
            (size,) = _read_struct(source, FILE_LENGTH, relative)
            if size < 0 or read + size > total:
                raise ArchiveTruncatedError(
                    f"entry {relative!r} runs past the header total",
                    expected=total,
                    actual=read + size,
                )
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "xb") as out:
                _copy_exact(source, out, size, progress, offset=read, label=relative)
            read += size

        if read != total:
            raise ArchiveTruncatedError(
                "byte count does not match header", expected=total, actual=read
            )
    except OperationCancelled:
        _restore(dest, created_root)
        logger.info("patchfeed.archive.extract_cancelled", destination=str(dest))
        return False
    except BaseException:
        _restore(dest, created_root)
        raise

    logger.info("patchfeed.archive.extracted", destination=str(dest), files=count, bytes=total)
    return True


def _topmost_missing(path: Path) -> Path | None:
    """The outermost directory ``mkdir(parents=True)`` would create for ``path``."""
    missing = None
    for candidate in (path, *path.parents):
        if candidate.exists():
            break
        missing = candidate
    return missing


def _restore(dest: Path, created_root: Path | None) -> None:
    if created_root is None:
        clear_directory(dest)
    else:
        remove_tree(created_root)


def _read_exact(source: BinaryIO, size: int, label: str) -> bytes:
    parts: list[bytes] = []
    remaining = size
    while remaining:
        chunk = source.read(remaining)
        if not chunk:
            raise ArchiveTruncatedError(
                f"unexpected end of archive reading {label}",
                expected=size,
                actual=size - remaining,
            )
        parts.append(chunk)
        remaining -= len(chunk)
    return b"".join(parts)


def _read_struct(source: BinaryIO, layout: struct.Struct, label: str) -> tuple[int, ...]:
    return layout.unpack(_read_exact(source, layout.size, label))


def _read_entry_path(source: BinaryIO) -> str:
    (length,) = _read_struct(source, PATH_LENGTH, "entry path length")
    if length <= 0 or length > MAX_PATH_BYTES:
        raise ArchiveTruncatedError(f"invalid entry path length {length}")
    raw = _read_exact(source, length, "entry path")
    try:
        return normalize_relative_path(raw.decode("utf-8"))
    except UnicodeDecodeError as e:
        raise ArchiveTruncatedError("entry path is not valid UTF-8") from e


def _copy_exact(
    source: BinaryIO,
    sink: BinaryIO,
    size: int,
    progress: ProgressReporter,
    *,
    offset: int,
    label: str,
) -> None:
    remaining = size
    while remaining:
        chunk = source.read(min(COPY_CHUNK_SIZE, remaining))
        if not chunk:
            raise ArchiveTruncatedError(
                f"data for {label!r} ended early",
                expected=size,
                actual=size - remaining,
            )
        sink.write(chunk)
        remaining -= len(chunk)
        progress.progress = offset + size - remaining
