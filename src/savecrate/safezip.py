"""
Zip-slip-safe zip packing and unpacking.

Every entry name is sanitized before anything touches the disk: an
absolute name, a drive prefix, a NUL byte, or a ``..`` that climbs
above the archive root aborts the whole operation.
"""

from __future__ import annotations

import io
import logging
import os
import shutil
import time
import zipfile
import zlib
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Callable, Iterable, Iterator, Optional, Union

from .errors import ArchiveIOError, FormatError, UnsafePathError
from .fsutil import ensure_dir
from .progress import ProgressThrottle

logger = logging.getLogger("savecrate.safezip")

COPY_BUFFER_SIZE = 256 * 1024
ENTRY_PERMISSIONS = 0o644

_ZIP_READ_ERRORS = (zipfile.BadZipFile, zlib.error, NotImplementedError, EOFError)

ZipSource = Union[Path, bytes, zipfile.ZipFile]
EntryProgress = Callable[[int, int], None]


def sanitize_entry_name(name: str) -> Optional[PurePosixPath]:
    """Normalize an archive entry name to a safe relative path.

    Backslashes become slashes, ``.`` segments and inner ``a/..`` pairs
    collapse.

    Returns:
        The relative path, or None if the name is empty after
        normalization (e.g. ``"./"``).

    Raises:
        UnsafePathError: If the name is absolute, has a drive, contains
            NUL, or escapes the root.
    """
    if "\x00" in name:
        raise UnsafePathError(f"Refused unsafe zip entry path (zip-slip protection): {name!r}")

    text = name.replace("\\", "/")
    if text.startswith("/") or PureWindowsPath(name).drive:
        raise UnsafePathError(f"Refused unsafe zip entry path (zip-slip protection): {name}")

    parts: list[str] = []
    for segment in text.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if not parts:
                raise UnsafePathError(
                    f"Refused unsafe zip entry path (zip-slip protection): {name}"
                )
            parts.pop()
            continue
        parts.append(segment)

    return PurePosixPath(*parts) if parts else None


def open_zip_bytes(data: bytes) -> zipfile.ZipFile:
    """Open an in-memory zip.

    Raises:
        FormatError: If ``data`` is not a zip archive.
    """
    try:
        return zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as exc:
        raise FormatError(f"Invalid zip archive format: {exc}") from exc


def open_zip_path(path: Path) -> zipfile.ZipFile:
    """Open a zip archive from disk."""
    try:
        return zipfile.ZipFile(path)
    except zipfile.BadZipFile as exc:
        raise FormatError(f"Invalid zip archive format: {exc}") from exc
    except OSError as exc:
        raise ArchiveIOError(f"Failed to open zip archive '{path}': {exc}", path) from exc


def _as_zipfile(source: ZipSource) -> tuple[zipfile.ZipFile, bool]:
    if isinstance(source, zipfile.ZipFile):
        return source, False
    if isinstance(source, (bytes, bytearray)):
        return open_zip_bytes(bytes(source)), True
    return open_zip_path(Path(source)), True


def iter_entries(zf: zipfile.ZipFile) -> Iterator[tuple[zipfile.ZipInfo, Optional[PurePosixPath]]]:
    """Yield ``(info, sanitized path)`` for every entry.

    Raises UnsafePathError on the first unsafe name.
    """
    for info in zf.infolist():
        yield info, sanitize_entry_name(info.filename)


def read_entry_bytes(zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> bytes:
    """Read one entry fully (CRC is checked on the way)."""
    try:
        return zf.read(info)
    except _ZIP_READ_ERRORS as exc:
        raise FormatError(f"Failed to read zip entry '{info.filename}': {exc}") from exc


def verify_entries(zf: zipfile.ZipFile) -> int:
    """Read every entry without extracting; return the entry count.

    Catches corrupted or truncated entries that opening the central
    directory alone would miss.
    """
    count = 0
    for info, _ in iter_entries(zf):
        if info.is_dir():
            continue
        try:
            with zf.open(info) as handle:
                while handle.read(COPY_BUFFER_SIZE):
                    pass
        except _ZIP_READ_ERRORS as exc:
            raise FormatError(f"Failed to read zip entry '{info.filename}': {exc}") from exc
        count += 1
    return count


def extract_zip(
    source: ZipSource,
    destination: Path,
    on_progress: Optional[EntryProgress] = None,
) -> int:
    """Extract ``source`` into ``destination``.

    All entry names are validated before the first file is written.
    Progress is reported as ``(entries done, entries total)``: once at
    0, then throttled, always including the final entry.

    Returns:
        int: Number of files written.
    """
    zf, owned = _as_zipfile(source)
    try:
        entries = list(iter_entries(zf))
        total = len(entries)
        throttle = ProgressThrottle(total)

        ensure_dir(destination)
        created_dirs = {destination}
        if on_progress:
            on_progress(0, total)

        written = 0
        for index, (info, relative) in enumerate(entries):
            if relative is not None:
                output_path = destination.joinpath(*relative.parts)
                if info.is_dir():
                    if output_path not in created_dirs:
                        ensure_dir(output_path)
                        created_dirs.add(output_path)
                else:
                    if output_path.parent not in created_dirs:
                        ensure_dir(output_path.parent)
                        created_dirs.add(output_path.parent)
                    extract_entry(zf, info, output_path)
                    written += 1

            current = index + 1
            if on_progress and throttle.should_emit(current):
                on_progress(current, total)

        logger.debug("Extracted %d files into %s", written, destination)
        return written
    finally:
        if owned:
            zf.close()


def extract_entry(zf: zipfile.ZipFile, info: zipfile.ZipInfo, output_path: Path) -> None:
    """Stream one entry to ``output_path``; the parent must exist."""
    try:
        with zf.open(info) as src, open(output_path, "wb") as dst:
            shutil.copyfileobj(src, dst, COPY_BUFFER_SIZE)
    except _ZIP_READ_ERRORS as exc:
        raise FormatError(f"Failed to extract zip entry '{info.filename}': {exc}") from exc
    except OSError as exc:
        raise ArchiveIOError(
            f"Failed to extract zip entry to '{output_path}': {exc}", output_path
        ) from exc

    mode = (info.external_attr >> 16) & 0o777
    if mode and os.name == "posix":
        try:
            os.chmod(output_path, mode)
        except OSError as exc:
            logger.debug("Could not apply mode %o to %s: %s", mode, output_path, exc)


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


def _zip_info(archive_path: str, mtime: Optional[float] = None) -> zipfile.ZipInfo:
    stamp = time.localtime(mtime if mtime is not None else time.time())
    date_time = max(stamp[:6], (1980, 1, 1, 0, 0, 0))
    info = zipfile.ZipInfo(archive_path.replace("\\", "/"), date_time=date_time)
    info.compress_type = zipfile.ZIP_DEFLATED
    info.external_attr = (0o100000 | ENTRY_PERMISSIONS) << 16
    return info


def write_bytes_entry(zf: zipfile.ZipFile, archive_path: str, data: bytes) -> None:
    """Add an in-memory entry."""
    zf.writestr(_zip_info(archive_path), data)


def write_file_entry(zf: zipfile.ZipFile, archive_path: str, source: Path) -> None:
    """Stream a file from disk into an entry."""
    try:
        info = _zip_info(archive_path, source.stat().st_mtime)
        with open(source, "rb") as src, zf.open(info, "w") as dst:
            shutil.copyfileobj(src, dst, COPY_BUFFER_SIZE)
    except OSError as exc:
        raise ArchiveIOError(
            f"Failed to write zip entry '{archive_path}' from '{source}': {exc}", source
        ) from exc


def build_zip_bytes(entries: Iterable[tuple[str, Union[Path, bytes]]]) -> bytes:
    """Build a deflated zip in memory.

    Args:
        entries: ``(archive path, source file or raw bytes)`` pairs, in
            the order they should appear.
    """
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for archive_path, content in entries:
            if isinstance(content, (bytes, bytearray)):
                write_bytes_entry(zf, archive_path, bytes(content))
            else:
                write_file_entry(zf, archive_path, Path(content))
    return buffer.getvalue()
