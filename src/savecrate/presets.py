"""
Preset exchange — export, inspect, and merge game configuration presets.

A preset archive is a plain zip holding ``<SaveDataRoot>/Options.data``
plus one ``<SaveDataRoot>/PresetOptions_<id>.data`` per preset. Imports
never overwrite local presets: every imported preset gets a fresh id and
a name that does not collide with an existing one.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from pydantic import BaseModel

from .config import LauncherConfig
from .container import extension_is_supported, resolve_output_path
from .errors import ArchiveIOError, FormatError, PresetError, SaveCrateError
from .fsutil import ensure_dir, read_bytes, to_relative_path, write_bytes
from .options_data import (
    OPTIONS_FILE_NAME,
    OptionsData,
    PresetIdAllocator,
    build_options_data,
    collect_existing_preset_ids,
    default_preset_name,
    display_name,
    load_options_data,
    make_unique_name,
    normalize_name_key,
    parse_options_data,
    parse_preset_id_from_archive_path,
    preset_file_name,
    preset_file_path,
)
from .safezip import build_zip_bytes, iter_entries, open_zip_path, read_entry_bytes
from .transaction import target_lock

logger = logging.getLogger("savecrate.presets")

PRESET_ARCHIVE_DIR_NAME = "presets"
ZIP_EXTENSION = "zip"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class PresetEntrySummary(BaseModel):
    id: int
    name: str
    has_data_file: bool


class PresetExportSummary(BaseModel):
    archive_path: Path
    exported_presets: int


class PresetImportSelection(BaseModel):
    """One preset picked from an archive, optionally renamed."""

    source_id: int
    name: Optional[str] = None


class ImportedPresetSummary(BaseModel):
    source_id: int
    target_id: int
    name: str


class PresetImportSummary(BaseModel):
    imported_presets: int
    imported: list[ImportedPresetSummary]


@dataclass
class PresetArchiveContents:
    """Decoded preset archive: the record plus raw per-preset data."""

    options: OptionsData
    preset_files: dict[int, bytes] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Local presets
# ---------------------------------------------------------------------------


def save_data_dir(config: LauncherConfig) -> Path:
    """``<profile>/<SaveDataRoot>``."""
    return config.profile_root / to_relative_path(config.paths.save_data_root)


def list_presets_from_save_data_dir(save_data: Path) -> list[PresetEntrySummary]:
    """Presets recorded in ``<save_data>/Options.data`` (empty if absent)."""
    options = load_options_data(save_data / OPTIONS_FILE_NAME)
    if options is None:
        return []
    return [
        PresetEntrySummary(
            id=preset_id,
            name=name if name.strip() else default_preset_name(preset_id),
            has_data_file=preset_file_path(save_data, preset_id).is_file(),
        )
        for preset_id, name in sorted(options.preset_names.items())
    ]


def list_local_presets(config: LauncherConfig) -> list[PresetEntrySummary]:
    return list_presets_from_save_data_dir(save_data_dir(config))


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def preset_archive_extension(config: LauncherConfig) -> str:
    return config.presets.extension


def make_default_archive_path(config: LauncherConfig) -> Path:
    timestamp = int(time.time())
    return (
        config.home_path
        / PRESET_ARCHIVE_DIR_NAME
        / f"{config.mod_id}-presets-{timestamp}.{preset_archive_extension(config)}"
    )


def export_selected_presets(
    config: LauncherConfig,
    preset_ids: Iterable[int],
    output_path: Optional[Path | str] = None,
) -> PresetExportSummary:
    """Write the chosen local presets into a preset archive.

    The archive's current preset is the local one if it was exported,
    otherwise the lowest exported id.

    Raises:
        PresetError: Empty selection, unknown id, or missing data file.
    """
    selected = sorted({preset_id for preset_id in preset_ids if preset_id >= 0})
    if not selected:
        raise PresetError("At least one preset must be selected for export.")

    save_data = save_data_dir(config)
    options_path = save_data / OPTIONS_FILE_NAME
    local = load_options_data(options_path)
    if local is None:
        raise ArchiveIOError(
            f"Options.data was not found for preset export: {options_path}", options_path
        )

    names: dict[int, str] = {}
    sources: list[tuple[int, Path]] = []
    for preset_id in selected:
        if preset_id not in local.preset_names:
            raise PresetError(
                f"Selected preset id {preset_id} does not exist in local Options.data."
            )
        source = preset_file_path(save_data, preset_id)
        if not source.is_file():
            raise PresetError(f"Preset data file was not found for id {preset_id}: {source}")
        names[preset_id] = display_name(preset_id, local.preset_names[preset_id])
        sources.append((preset_id, source))

    current = local.current_preset if local.current_preset in names else selected[0]
    exported = OptionsData(
        version=local.effective_version, current_preset=current, preset_names=names
    )

    root = to_relative_path(config.paths.save_data_root).as_posix()
    entries: list[tuple[str, Path | bytes]] = [
        (f"{root}/{OPTIONS_FILE_NAME}", build_options_data(exported))
    ]
    entries += [(f"{root}/{preset_file_name(pid)}", src) for pid, src in sources]

    archive_path = resolve_output_path(
        output_path, preset_archive_extension(config), lambda: make_default_archive_path(config)
    )
    write_bytes(archive_path, build_zip_bytes(entries))

    logger.info("Exported %d presets to %s", len(sources), archive_path)
    return PresetExportSummary(archive_path=archive_path, exported_presets=len(sources))


# ---------------------------------------------------------------------------
# Archive reading
# ---------------------------------------------------------------------------


def read_preset_archive(config: LauncherConfig, archive_path: Path) -> PresetArchiveContents:
    """Load and validate a preset archive.

    Raises:
        ArchiveIOError: The file does not exist.
        FormatError: Wrong extension, bad zip, no Options.data, or a bad record.
        UnsafePathError: An entry name escapes the archive root.
    """
    archive_path = Path(archive_path)
    if not archive_path.is_file():
        raise ArchiveIOError(f"Preset archive was not found: {archive_path}", archive_path)
    if not extension_is_supported(archive_path, preset_archive_extension(config), ZIP_EXTENSION):
        raise FormatError(f"Unsupported preset archive extension: {archive_path}")

    root = to_relative_path(config.paths.save_data_root).as_posix()
    options_entry = f"{root}/{OPTIONS_FILE_NAME}".lower()
    options_bytes: Optional[bytes] = None
    preset_files: dict[int, bytes] = {}

    with open_zip_path(archive_path) as zf:
        for info, sanitized in iter_entries(zf):
            if info.is_dir() or sanitized is None:
                continue
            normalized = sanitized.as_posix()
            if normalized.lower() == options_entry:
                options_bytes = read_entry_bytes(zf, info)
                continue
            preset_id = parse_preset_id_from_archive_path(normalized, root)
            if preset_id is not None:
                preset_files[preset_id] = read_entry_bytes(zf, info)

    if options_bytes is None:
        raise FormatError(f"Preset archive does not contain '{root}/{OPTIONS_FILE_NAME}'.")
    return PresetArchiveContents(
        options=parse_options_data(options_bytes), preset_files=preset_files
    )


def inspect_preset_archive(config: LauncherConfig, archive_path: Path) -> list[PresetEntrySummary]:
    """List the presets an archive offers, flagging those without data."""
    contents = read_preset_archive(config, archive_path)
    return [
        PresetEntrySummary(
            id=preset_id,
            name=name if name.strip() else default_preset_name(preset_id),
            has_data_file=preset_id in contents.preset_files,
        )
        for preset_id, name in sorted(contents.options.preset_names.items())
    ]


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


def _merge_into_profile(
    config: LauncherConfig,
    incoming: list[tuple[int, str, bytes]],
    fallback_version: int,
) -> list[ImportedPresetSummary]:
    """Append ``(source id, requested name, data)`` presets to the profile.

    Ids come from ``max(used) + 1`` where used ids cover both the data
    files on disk and the record's keys. If the record's current preset
    no longer exists it is pointed at the first imported preset.
    """
    target_dir = save_data_dir(config)
    ensure_dir(target_dir)
    options_path = target_dir / OPTIONS_FILE_NAME

    local = load_options_data(options_path) or OptionsData(
        version=fallback_version, current_preset=0
    )
    if local.version == 0:
        local.version = fallback_version

    used_ids = collect_existing_preset_ids(target_dir) | set(local.preset_names)
    allocator = PresetIdAllocator(used_ids)
    used_names = {normalize_name_key(name) for name in local.preset_names.values()}

    imported: list[ImportedPresetSummary] = []
    written: list[Path] = []
    try:
        for source_id, requested_name, data in incoming:
            final_name = make_unique_name(requested_name, used_names)
            used_names.add(normalize_name_key(final_name))
            target_id = allocator.allocate()

            target_path = preset_file_path(target_dir, target_id)
            write_bytes(target_path, data)
            written.append(target_path)

            local.preset_names[target_id] = final_name
            imported.append(
                ImportedPresetSummary(source_id=source_id, target_id=target_id, name=final_name)
            )

        if local.current_preset not in local.preset_names:
            local.current_preset = imported[0].target_id
        write_bytes(options_path, build_options_data(local))
    except SaveCrateError:
        for path in written:
            path.unlink(missing_ok=True)
        raise

    for item in imported:
        logger.debug("Imported preset %d as %d (%s)", item.source_id, item.target_id, item.name)
    return imported


def import_presets_from_archive(
    config: LauncherConfig,
    archive_path: Path,
    selections: Iterable[PresetImportSelection],
) -> PresetImportSummary:
    """Merge selected presets from a preset archive into the profile.

    Repeated source ids are imported once. A selection's ``name``
    overrides the archive's name when it is not blank.

    Raises:
        PresetError: Empty selection, negative id, or a preset missing
            from the archive (record entry or data file).
    """
    selections = list(selections)
    if not selections:
        raise PresetError("At least one preset must be selected for import.")

    contents = read_preset_archive(config, archive_path)

    incoming: list[tuple[int, str, bytes]] = []
    seen: set[int] = set()
    for selection in selections:
        source_id = selection.source_id
        if source_id < 0:
            raise PresetError(f"Invalid source preset id: {source_id}")
        if source_id in seen:
            continue
        seen.add(source_id)

        if source_id not in contents.options.preset_names:
            raise PresetError(
                f"Selected source preset id {source_id} was not found in the archive Options.data."
            )
        data = contents.preset_files.get(source_id)
        if data is None:
            raise PresetError(
                f"Selected source preset id {source_id} has no matching preset data file "
                "in the archive."
            )

        name = (selection.name or "").strip() or display_name(
            source_id, contents.options.preset_names[source_id]
        )
        incoming.append((source_id, name, data))

    with target_lock(config.profile_root):
        imported = _merge_into_profile(config, incoming, contents.options.effective_version)

    logger.info("Imported %d presets from %s", len(imported), archive_path)
    return PresetImportSummary(imported_presets=len(imported), imported=imported)


def import_presets_from_save_data_dir(
    config: LauncherConfig, source_dir: Path
) -> PresetImportSummary:
    """Merge every preset of another SaveData directory into the profile.

    Presets without a data file in ``source_dir`` are skipped.

    Raises:
        ArchiveIOError: ``source_dir`` or its Options.data is missing.
        PresetError: Nothing importable was found.
    """
    source_dir = Path(source_dir)
    if not source_dir.is_dir():
        raise ArchiveIOError(f"Source SaveData directory was not found: {source_dir}", source_dir)

    source_options_path = source_dir / OPTIONS_FILE_NAME
    source = load_options_data(source_options_path)
    if source is None:
        raise ArchiveIOError(
            f"Options.data was not found in source SaveData: {source_options_path}",
            source_options_path,
        )

    incoming: list[tuple[int, str, bytes]] = []
    for source_id, name in sorted(source.preset_names.items()):
        data_path = preset_file_path(source_dir, source_id)
        if not data_path.is_file():
            logger.debug("Skipping preset %d without data file", source_id)
            continue
        incoming.append((source_id, display_name(source_id, name), read_bytes(data_path)))

    if not incoming:
        raise PresetError("No importable presets were found in the source SaveData directory.")

    with target_lock(config.profile_root):
        imported = _merge_into_profile(config, incoming, source.effective_version)

    logger.info("Imported %d presets from %s", len(imported), source_dir)
    return PresetImportSummary(imported_presets=len(imported), imported=imported)
