"""
Migration archives — move a player's save data between machines.

An archive is a container (see container.py) around a zip with two
top-level prefixes:

- ``profile/<rel>``: profile files matching the configured inclusion
  regexes.
- ``locallow/<rel>``: files under the LocalLow base, limited to the
  configured ``locallow_root``.

Import plans every entry first, then replaces the managed files via a
FileSetTransaction so a failure leaves the previous data in place.
"""

from __future__ import annotations

import logging
import os
import re
import time
import zipfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional

from pydantic import BaseModel

from .config import LauncherConfig
from .container import (
    LEGACY_EXTENSION,
    build_container,
    extension_is_supported,
    open_container,
    resolve_output_path,
)
from .errors import ArchiveIOError, FormatError, NothingToExportError
from .fsutil import (
    collect_files_recursive,
    ensure_dir,
    read_bytes,
    to_relative_path,
    write_bytes,
)
from .host import HostServices, host_for
from .safezip import (
    build_zip_bytes,
    extract_entry,
    iter_entries,
    open_zip_bytes,
    verify_entries,
)
from .transaction import FileSetTransaction, ManagedTree

logger = logging.getLogger("savecrate.migration")

PROFILE_ARCHIVE_PREFIX = "profile"
LOCALLOW_ARCHIVE_PREFIX = "locallow"
DEFAULT_ARCHIVE_DIR_NAME = "migrations"
BACKUP_BASE_DIR_NAME = "migration-import-backups"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class MigrationExportSummary(BaseModel):
    archive_path: Path
    included_files: int
    profile_files: int
    locallow_files: int
    encrypted: bool


class MigrationImportSummary(BaseModel):
    imported_files: int
    profile_files: int
    locallow_files: int
    encrypted: bool


class MigrationPasswordValidationSummary(BaseModel):
    encrypted: bool


class ImportCategory(str, Enum):
    PROFILE = PROFILE_ARCHIVE_PREFIX
    LOCALLOW = LOCALLOW_ARCHIVE_PREFIX


@dataclass
class PlannedImportFile:
    """An archive entry that will be written on import.

    Attributes:
        archive_index: Position in the zip's entry list.
        relative_path: Path below the category root.
        category: Which root the file lands under.
    """

    archive_index: int
    relative_path: PurePosixPath
    category: ImportCategory


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------


def collect_profile_files(
    profile_root: Path, patterns: list[re.Pattern[str]]
) -> list[tuple[Path, str]]:
    """Profile files whose forward-slash relative path matches any pattern.

    Returns:
        list: ``(absolute path, relative path)`` pairs.
    """
    if not profile_root.exists():
        return []

    matched = []
    for file_path in collect_files_recursive(profile_root):
        relative = file_path.relative_to(profile_root).as_posix()
        if any(pattern.search(relative) for pattern in patterns):
            matched.append((file_path, relative))
    return matched


def collect_supported_profile_save_files(config: LauncherConfig) -> list[tuple[Path, str]]:
    """Profile files a migration export would include."""
    return collect_profile_files(config.profile_root, config.migration.compiled_patterns())


def locallow_allowed_prefix(config: LauncherConfig) -> str:
    """Configured LocalLow root as a forward-slash relative path."""
    return to_relative_path(config.paths.locallow_root).as_posix()


def is_locallow_entry_allowed(relative: str, allowed_prefix: str) -> bool:
    return relative == allowed_prefix or relative.startswith(allowed_prefix + "/")


def collect_locallow_files(locallow_base: Path, allowed_prefix: str) -> list[tuple[Path, str]]:
    """Files under ``<locallow_base>/<allowed_prefix>``.

    Returns:
        list: ``(absolute path, path relative to locallow_base)`` pairs.
    """
    target_dir = locallow_base / allowed_prefix
    if not target_dir.exists():
        return []

    matched = []
    for file_path in collect_files_recursive(target_dir):
        relative = file_path.relative_to(locallow_base).as_posix()
        if is_locallow_entry_allowed(relative, allowed_prefix):
            matched.append((file_path, relative))
    return matched


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def make_default_archive_path(config: LauncherConfig) -> Path:
    timestamp = int(time.time())
    return (
        config.home_path
        / DEFAULT_ARCHIVE_DIR_NAME
        / f"{config.mod_id}-migration-{timestamp}.{config.migration.extension}"
    )


def export_migration_data(
    config: LauncherConfig,
    output_path: Optional[Path | str] = None,
    encrypt: bool = False,
    password: Optional[str] = None,
    host: Optional[HostServices] = None,
) -> MigrationExportSummary:
    """Write a migration archive of the current profile and LocalLow data.

    Args:
        config: Launcher configuration.
        output_path: Destination; defaults to
            ``<home>/migrations/<mod>-migration-<ts>.<ext>``.
        encrypt: Seal the archive with ``password``.
        password: Required when ``encrypt`` is set.
        host: Host services (LocalLow location). Defaults to host_for(config).

    Returns:
        MigrationExportSummary

    Raises:
        NothingToExportError: If no file matched; no archive is written.
    """
    host = host or host_for(config)
    profile_files = collect_supported_profile_save_files(config)
    locallow_files = collect_locallow_files(host.locallow_base(), locallow_allowed_prefix(config))

    if not profile_files and not locallow_files:
        raise NothingToExportError(
            "No migration data was found to export "
            "(profile patterns and LocalLow target were empty)."
        )

    entries = [(f"{PROFILE_ARCHIVE_PREFIX}/{rel}", src) for src, rel in profile_files]
    entries += [(f"{LOCALLOW_ARCHIVE_PREFIX}/{rel}", src) for src, rel in locallow_files]
    zip_bytes = build_zip_bytes(entries)

    archive_bytes, encrypted = build_container(
        zip_bytes, config.migration.magic_bytes, encrypt=encrypt, password=password
    )
    archive_path = resolve_output_path(
        output_path, config.migration.extension, lambda: make_default_archive_path(config)
    )
    write_bytes(archive_path, archive_bytes)

    summary = MigrationExportSummary(
        archive_path=archive_path,
        included_files=len(profile_files) + len(locallow_files),
        profile_files=len(profile_files),
        locallow_files=len(locallow_files),
        encrypted=encrypted,
    )
    logger.info(
        "Exported migration archive %s (%d profile, %d LocalLow files, encrypted=%s)",
        archive_path,
        summary.profile_files,
        summary.locallow_files,
        encrypted,
    )
    return summary


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


def _open_archive(
    config: LauncherConfig, archive_path: Path, password: Optional[str]
) -> tuple[zipfile.ZipFile, bool]:
    archive_path = Path(archive_path)
    if not archive_path.is_file():
        raise ArchiveIOError(f"Migration archive was not found: {archive_path}", archive_path)

    extension = config.migration.extension
    if not extension_is_supported(archive_path, extension, LEGACY_EXTENSION):
        raise FormatError(f"Unsupported migration archive extension: {archive_path}")

    zip_bytes, encrypted = open_container(
        read_bytes(archive_path),
        config.migration.magic_bytes,
        password=password,
        extension=extension,
    )
    return open_zip_bytes(zip_bytes), encrypted


def plan_import(
    zf: zipfile.ZipFile,
    patterns: list[re.Pattern[str]],
    locallow_prefix: str,
) -> list[PlannedImportFile]:
    """Decide which entries an import writes.

    Every entry name is sanitized; one unsafe name aborts the plan.
    Entries outside the profile patterns or the LocalLow root are
    skipped.
    """
    planned = []
    for index, (info, sanitized) in enumerate(iter_entries(zf)):
        if info.is_dir() or sanitized is None or len(sanitized.parts) < 2:
            continue

        top = sanitized.parts[0]
        relative = PurePosixPath(*sanitized.parts[1:])
        relative_text = relative.as_posix()

        if top == PROFILE_ARCHIVE_PREFIX:
            if any(pattern.search(relative_text) for pattern in patterns):
                planned.append(PlannedImportFile(index, relative, ImportCategory.PROFILE))
                continue
        elif top == LOCALLOW_ARCHIVE_PREFIX:
            if is_locallow_entry_allowed(relative_text, locallow_prefix):
                planned.append(PlannedImportFile(index, relative, ImportCategory.LOCALLOW))
                continue

        logger.debug("Skipping migration entry outside the allowlist: %s", info.filename)
    return planned


def create_backup_root(config: LauncherConfig) -> Path:
    """Pick an unused ``import-<ms>-<pid>[-n]`` directory for import backups."""
    base = config.home_path / BACKUP_BASE_DIR_NAME
    ensure_dir(base)
    stem = f"import-{int(time.time() * 1000)}-{os.getpid()}"
    for attempt in range(100):
        candidate = base / (stem if attempt == 0 else f"{stem}-{attempt}")
        if not candidate.exists():
            return candidate
    raise ArchiveIOError("Failed to allocate a unique migration backup directory", base)


def import_migration_data(
    config: LauncherConfig,
    archive_path: Path,
    password: Optional[str] = None,
    host: Optional[HostServices] = None,
) -> MigrationImportSummary:
    """Replace profile and LocalLow save data with an archive's contents.

    Nothing on disk changes unless the archive opens, decrypts, and
    yields at least one supported entry.

    Raises:
        FormatError: Bad container, bad zip, or no supported entries.
        DecryptionError: Wrong password or tampered archive.
        UnsafePathError: An entry would escape its root.
        TransactionError: The commit failed (previous data restored
            unless ``manual_recovery_required`` is set).
    """
    host = host or host_for(config)
    patterns = config.migration.compiled_patterns()
    locallow_prefix = locallow_allowed_prefix(config)
    profile_root = config.profile_root
    locallow_base = host.locallow_base()

    zf, encrypted = _open_archive(config, archive_path, password)
    with zf:
        planned = plan_import(zf, patterns, locallow_prefix)
        if not planned:
            raise FormatError("No supported migration entries were found in the archive.")

        trees = [
            ManagedTree(
                name=ImportCategory.PROFILE.value,
                root=profile_root,
                collect=lambda root: [p for p, _ in collect_profile_files(root, patterns)],
            ),
            ManagedTree(
                name=ImportCategory.LOCALLOW.value,
                root=locallow_base,
                collect=lambda root: [p for p, _ in collect_locallow_files(root, locallow_prefix)],
            ),
        ]
        transaction = FileSetTransaction(create_backup_root(config), trees, lock_path=profile_root)
        entries = zf.infolist()

        def populate(staging: Path) -> tuple[int, int]:
            counts = {ImportCategory.PROFILE: 0, ImportCategory.LOCALLOW: 0}
            for item in planned:
                destination = transaction.staging_dir(item.category.value).joinpath(
                    *item.relative_path.parts
                )
                ensure_dir(destination.parent)
                extract_entry(zf, entries[item.archive_index], destination)
                counts[item.category] += 1
            return counts[ImportCategory.PROFILE], counts[ImportCategory.LOCALLOW]

        profile_count, locallow_count = transaction.run(populate)

    summary = MigrationImportSummary(
        imported_files=profile_count + locallow_count,
        profile_files=profile_count,
        locallow_files=locallow_count,
        encrypted=encrypted,
    )
    logger.info(
        "Imported migration archive %s (%d profile, %d LocalLow files)",
        archive_path,
        profile_count,
        locallow_count,
    )
    return summary


def validate_migration_archive_password(
    config: LauncherConfig,
    archive_path: Path,
    password: Optional[str] = None,
) -> MigrationPasswordValidationSummary:
    """Check that ``archive_path`` opens (and decrypts) without importing it."""
    zf, encrypted = _open_archive(config, archive_path, password)
    with zf:
        verify_entries(zf)
    return MigrationPasswordValidationSummary(encrypted=encrypted)
