"""Filesystem helpers shared by the orchestrators.

All failures surface as ArchiveIOError carrying the offending path.
"""

from __future__ import annotations

import shutil
from pathlib import Path, PurePosixPath, PureWindowsPath

from .errors import ArchiveIOError, UnsafePathError


def to_relative_path(value: str) -> Path:
    """Turn ``"a//b/ c "`` style config values into a clean relative Path."""
    segments = [s.strip() for s in value.replace("\\", "/").split("/")]
    return Path(*[s for s in segments if s])


def validate_relative_path(path: Path | str) -> None:
    """Reject empty, absolute, or parent-escaping relative paths.

    Raises:
        UnsafePathError: If ``path`` could leave its root.
    """
    text = str(path)
    if not text or text == ".":
        raise UnsafePathError("Relative path must not be empty")
    posix = PurePosixPath(text.replace("\\", "/"))
    if (
        posix.is_absolute()
        or PureWindowsPath(text).drive
        or any(part == ".." for part in posix.parts)
    ):
        raise UnsafePathError(f"Refused unsafe relative path: {text}")


def collect_files_recursive(root: Path) -> list[Path]:
    """List every regular file under ``root`` (sorted, depth-first).

    Raises:
        ArchiveIOError: If a directory cannot be listed.
    """
    files: list[Path] = []
    try:
        entries = sorted(root.iterdir())
    except OSError as exc:
        raise ArchiveIOError(f"Failed to read directory '{root}': {exc}", root) from exc

    for entry in entries:
        if entry.is_dir():
            files.extend(collect_files_recursive(entry))
        elif entry.is_file():
            files.append(entry)
    return files


def clean_path(path: Path) -> None:
    """Remove a file or directory tree if it exists."""
    if not path.exists() and not path.is_symlink():
        return
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except OSError as exc:
        raise ArchiveIOError(f"Failed to remove '{path}': {exc}", path) from exc


def ensure_dir(path: Path) -> None:
    """Create ``path`` and its parents."""
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ArchiveIOError(f"Failed to create directory '{path}': {exc}", path) from exc


def copy_file(source: Path, destination: Path) -> None:
    """Copy one file, creating the destination's parent directories."""
    ensure_dir(destination.parent)
    try:
        shutil.copyfile(source, destination)
    except OSError as exc:
        raise ArchiveIOError(
            f"Failed to copy '{source}' to '{destination}': {exc}", source
        ) from exc


def copy_directory_recursive(source: Path, destination: Path) -> int:
    """Copy every file under ``source`` into ``destination``.

    Returns:
        int: Number of files copied (0 when ``source`` is missing).

    Raises:
        ArchiveIOError: If ``source`` is not a directory or a copy fails.
    """
    if not source.exists():
        return 0
    if not source.is_dir():
        raise ArchiveIOError(f"Source for recursive copy is not a directory: {source}", source)

    ensure_dir(destination)
    files = collect_files_recursive(source)
    for source_file in files:
        copy_file(source_file, destination / source_file.relative_to(source))
    return len(files)


def read_bytes(path: Path) -> bytes:
    """Read a whole file."""
    try:
        return path.read_bytes()
    except OSError as exc:
        raise ArchiveIOError(f"Failed to read '{path}': {exc}", path) from exc


def write_bytes(path: Path, data: bytes) -> None:
    """Write a whole file, creating parent directories."""
    ensure_dir(path.parent)
    try:
        path.write_bytes(data)
    except OSError as exc:
        raise ArchiveIOError(f"Failed to write '{path}': {exc}", path) from exc
