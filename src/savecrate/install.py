"""
Profile lifecycle — install releases, uninstall, and move SaveData around.

Install pipeline (all inside one StagedTransaction on the profile root):

    resolving -> downloading -> extracting -> patchers -> restoring
              -> required-file check -> commit -> complete

Progress is reported on a single 0-100 scale (see progress.py). Any
failure emits a ``failed`` event and re-raises; the live profile is
only replaced once the staged copy passed its checks.
"""

from __future__ import annotations

import hashlib
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import requests
from pydantic import BaseModel, Field, ValidationError

from .config import LauncherConfig
from .download import download_file, fetch_json, http_session
from .errors import (
    ArchiveIOError,
    ConfigError,
    DownloadError,
    FormatError,
    SaveCrateError,
)
from .fsutil import (
    clean_path,
    collect_files_recursive,
    copy_directory_recursive,
    copy_file,
    ensure_dir,
    read_bytes,
    to_relative_path,
    validate_relative_path,
)
from .migration import collect_supported_profile_save_files
from .presets import (
    PresetEntrySummary,
    import_presets_from_save_data_dir,
    list_presets_from_save_data_dir,
    save_data_dir,
)
from .progress import InstallStage, ProgressEvent, ProgressSink, map_install_progress, percent
from .safezip import extract_zip
from .transaction import StagedTransaction, target_lock

logger = logging.getLogger("savecrate.install")

RELEASE_CACHE_DIR = ("cache", "releases")
PATCHERS_RELATIVE_DIR = ("BepInEx", "patchers")
PATCHER_MANIFEST_LIST_KEY = "windows"
SAVE_DATA_STAGING_SUFFIX = "._import_staging"
SAVE_DATA_BACKUP_SUFFIX = "._import_backup"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class GamePlatform(str, Enum):
    STEAM = "steam"
    EPIC = "epic"

    @classmethod
    def from_user_value(cls, value: str) -> "GamePlatform":
        normalized = value.strip().lower()
        for platform in cls:
            if platform.value == normalized:
                return platform
        raise ConfigError(f"Unsupported platform: {normalized}")


class GitHubAsset(BaseModel):
    name: str
    browser_download_url: str


class GitHubRelease(BaseModel):
    tag_name: str
    name: Optional[str] = None
    prerelease: bool = False
    published_at: Optional[str] = None
    assets: list[GitHubAsset] = Field(default_factory=list)


class ReleaseSummary(BaseModel):
    tag: str
    name: str
    published_at: str


class PatchFile(BaseModel):
    name: str
    expected_md5: Optional[str] = None


class InstallResult(BaseModel):
    tag: str
    platform: GamePlatform
    asset_name: str
    profile_path: Path
    restored_save_files: int
    skipped_patchers: list[str] = Field(default_factory=list)


class UninstallResult(BaseModel):
    profile_path: Path
    removed_profile: bool
    preserved_files: int


class PreservedSaveDataStatus(BaseModel):
    available: bool
    files: int


class SaveDataPreviewResult(BaseModel):
    source_game_path: Path
    source_save_data_path: Path
    presets: list[PresetEntrySummary]
    file_count: int


class SaveDataImportResult(BaseModel):
    source_save_data_path: Path
    target_save_data_path: Path
    imported_files: int
    imported_presets: int


class SaveDataPresetMergeResult(BaseModel):
    source_save_data_path: Path
    imported_presets: int


class _Reporter:
    """Maps stage-local percentages onto ProgressEvents for a sink."""

    def __init__(self, sink: Optional[ProgressSink]):
        self._sink = sink

    def emit(
        self, stage: InstallStage, stage_percent: float, message: str, **fields: Any
    ) -> None:
        if self._sink is None:
            return
        self._sink(
            ProgressEvent(
                stage=stage,
                progress=map_install_progress(stage, stage_percent),
                message=message,
                **fields,
            )
        )


# ---------------------------------------------------------------------------
# Releases
# ---------------------------------------------------------------------------


def _parse_release(payload: Any) -> GitHubRelease:
    try:
        return GitHubRelease.model_validate(payload)
    except ValidationError as exc:
        raise DownloadError(f"Failed to parse release payload: {exc}") from exc


def _session(config: LauncherConfig, session: Optional[requests.Session]) -> requests.Session:
    return session or http_session(config.distribution)


def list_releases(
    config: LauncherConfig, session: Optional[requests.Session] = None
) -> list[ReleaseSummary]:
    """Stable releases that ship an asset for at least one platform."""
    dist = config.distribution
    payload = fetch_json(_session(config, session), dist.releases_url, dist, what="Releases list")
    if not isinstance(payload, list):
        raise DownloadError("Failed to parse releases list: expected a JSON array")

    suffixes = tuple(dist.asset_suffixes.values())
    summaries = []
    for item in payload:
        release = _parse_release(item)
        if release.prerelease:
            continue
        if not any(asset.name.endswith(suffixes) for asset in release.assets):
            continue
        summaries.append(
            ReleaseSummary(
                tag=release.tag_name,
                name=release.name or "",
                published_at=release.published_at or "",
            )
        )
    return summaries


def fetch_release(
    config: LauncherConfig, tag: str, session: Optional[requests.Session] = None
) -> GitHubRelease:
    dist = config.distribution
    payload = fetch_json(
        _session(config, session), dist.release_by_tag_url(tag), dist, what=f"Release '{tag}'"
    )
    return _parse_release(payload)


def resolve_asset(
    release: GitHubRelease, platform: GamePlatform, config: LauncherConfig
) -> GitHubAsset:
    """Pick the release asset ending with the platform's configured suffix."""
    suffix = config.distribution.asset_suffixes.get(platform.value)
    if not suffix:
        raise ConfigError(f"No asset suffix configured for platform '{platform.value}'")
    for asset in release.assets:
        if asset.name.endswith(suffix):
            return asset
    raise DownloadError(
        f"Release '{release.tag_name}' does not include an asset ending with '{suffix}'"
    )


# ---------------------------------------------------------------------------
# Patchers
# ---------------------------------------------------------------------------


def safe_patcher_name(name: str) -> bool:
    """True for a plain file name (no separators, no dot segments)."""
    name = name.strip()
    if not name or name in (".", ".."):
        return False
    if "/" in name or "\\" in name or ":" in name:
        return False
    return not Path(name).is_absolute()


def fetch_patcher_manifest(
    config: LauncherConfig, session: requests.Session
) -> list[PatchFile]:
    """Parse ``{"windows": [names...], "<name>": "<md5>", ...}``."""
    patchers = config.distribution.patchers
    payload = fetch_json(session, patchers.manifest_url, config.distribution, "Patcher manifest")
    if not isinstance(payload, dict):
        return []
    names = payload.get(PATCHER_MANIFEST_LIST_KEY)
    if not isinstance(names, list):
        return []

    hashes = {
        key: value.strip()
        for key, value in payload.items()
        if key != PATCHER_MANIFEST_LIST_KEY and isinstance(value, str) and value.strip()
    }
    files = []
    for name in names:
        if not isinstance(name, str) or not name.strip():
            continue
        name = name.strip()
        files.append(PatchFile(name=name, expected_md5=hashes.get(name)))
    return files


def file_md5(path: Path) -> str:
    return hashlib.md5(read_bytes(path), usedforsecurity=False).hexdigest()


def sync_patchers(
    config: LauncherConfig,
    session: requests.Session,
    staging: Path,
    reporter: Optional[_Reporter] = None,
) -> list[str]:
    """Download the listed patchers into ``<staging>/BepInEx/patchers``.

    Individual failures (unsafe name, download error, md5 mismatch)
    skip that patcher and are reported, never raised.

    Returns:
        list[str]: Names of skipped patchers.

    Raises:
        DownloadError: If the manifest itself cannot be fetched.
    """
    reporter = reporter or _Reporter(None)
    files = fetch_patcher_manifest(config, session)
    if not files:
        reporter.emit(
            InstallStage.PATCHERS, 100.0, "No windows patchers listed; skipping patcher sync."
        )
        return []

    patchers_dir = staging.joinpath(*PATCHERS_RELATIVE_DIR)
    ensure_dir(patchers_dir)
    base_url = config.distribution.patchers.base_url.rstrip("/") + "/"
    total = len(files)
    skipped: list[str] = []

    reporter.emit(InstallStage.PATCHERS, 0.0, "Preparing patchers...", current=0, entries_total=total)
    for index, patch in enumerate(files, start=1):
        done = percent(index, total)
        if not safe_patcher_name(patch.name):
            logger.warning("Skipping unsafe patcher name %r", patch.name)
            skipped.append(patch.name)
            reporter.emit(
                InstallStage.PATCHERS, done, "Skipping unsafe patcher",
                current=index, entries_total=total,
            )
            continue

        destination = patchers_dir / patch.name
        try:
            download_file(session, base_url + patch.name, destination, config=config.distribution)
            if patch.expected_md5:
                actual = file_md5(destination)
                if actual.lower() != patch.expected_md5.lower():
                    raise FormatError(
                        f"MD5 mismatch for '{destination}': "
                        f"expected '{patch.expected_md5.lower()}', got '{actual}'"
                    )
        except SaveCrateError as exc:
            destination.unlink(missing_ok=True)
            logger.warning("Skipping patcher %s: %s", patch.name, exc)
            skipped.append(patch.name)
            reporter.emit(
                InstallStage.PATCHERS, done, f"Skipped patcher ({index}/{total}): {exc}",
                current=index, entries_total=total,
            )
            continue

        reporter.emit(
            InstallStage.PATCHERS, done, f"Patchers ok ({index}/{total})",
            current=index, entries_total=total,
        )

    if skipped:
        reporter.emit(InstallStage.PATCHERS, 100.0, f"Skipped {len(skipped)} patcher file(s)")
    else:
        reporter.emit(InstallStage.PATCHERS, 100.0, f"Downloaded {total} patcher file(s).")
    return skipped


# ---------------------------------------------------------------------------
# Preserved save data
# ---------------------------------------------------------------------------


def _copy_relative_tree(files: list[tuple[Path, Path]], destination_root: Path) -> int:
    for source, relative in files:
        validate_relative_path(relative)
        copy_file(source, destination_root / relative)
    return len(files)


def restore_preserved_save_data(config: LauncherConfig, destination: Path) -> int:
    """Copy preserved save data into ``destination`` (usually install staging)."""
    preserved = config.preserved_save_data_dir
    if not preserved.exists():
        return 0
    if not preserved.is_dir():
        raise ArchiveIOError(
            f"Preserved save data path is not a directory: {preserved}", preserved
        )
    files = [(path, path.relative_to(preserved)) for path in collect_files_recursive(preserved)]
    return _copy_relative_tree(files, destination)


def preserved_save_data_status(config: LauncherConfig) -> PreservedSaveDataStatus:
    """An empty preserved directory counts as not available."""
    preserved = config.preserved_save_data_dir
    if not preserved.exists():
        return PreservedSaveDataStatus(available=False, files=0)
    if not preserved.is_dir():
        raise ArchiveIOError(
            f"Preserved save data path is not a directory: {preserved}", preserved
        )
    count = len(collect_files_recursive(preserved))
    return PreservedSaveDataStatus(available=count > 0, files=count)


def verify_required_files(config: LauncherConfig, profile: Path) -> None:
    """Raise FormatError naming the first required file missing under ``profile``."""
    for relative in config.paths.required_files:
        candidate = profile / to_relative_path(relative)
        if not candidate.is_file():
            raise FormatError(f"Missing required file in profile: {candidate}")


# ---------------------------------------------------------------------------
# Install / uninstall
# ---------------------------------------------------------------------------


def _check_tag(tag: str) -> str:
    tag = tag.strip()
    if not tag:
        raise ConfigError("Release tag is required")
    if not safe_patcher_name(tag):
        raise ConfigError(f"Release tag is not usable as a directory name: {tag}")
    return tag


def install_release(
    config: LauncherConfig,
    tag: str,
    platform: GamePlatform | str,
    restore_preserved: bool = False,
    on_progress: Optional[ProgressSink] = None,
    session: Optional[requests.Session] = None,
) -> InstallResult:
    """Download and install a release into the profile.

    Args:
        config: Launcher configuration.
        tag: Release tag.
        platform: ``steam`` or ``epic``.
        restore_preserved: Copy preserved save data into the new profile.
        on_progress: Receives ProgressEvents.
        session: HTTP session (defaults to one with the configured user agent).

    Returns:
        InstallResult
    """
    reporter = _Reporter(on_progress)
    try:
        return _install(config, tag, platform, restore_preserved, reporter, session)
    except Exception as exc:
        reporter.emit(InstallStage.FAILED, 0.0, f"Installation failed: {exc}")
        raise


def _install(
    config: LauncherConfig,
    tag: str,
    platform: GamePlatform | str,
    restore_preserved: bool,
    reporter: _Reporter,
    session: Optional[requests.Session],
) -> InstallResult:
    if not isinstance(platform, GamePlatform):
        platform = GamePlatform.from_user_value(platform)
    tag = _check_tag(tag)
    session = _session(config, session)

    reporter.emit(InstallStage.RESOLVING, 0.0, "Resolving release metadata...")
    release = fetch_release(config, tag, session)
    asset = resolve_asset(release, platform, config)

    profile = config.profile_root
    cache_zip = config.home_path.joinpath(*RELEASE_CACHE_DIR, tag, f"{platform.value}.zip")

    def on_download(downloaded: int, total: Optional[int]) -> None:
        reporter.emit(
            InstallStage.DOWNLOADING,
            percent(downloaded, total),
            "Downloading release package...",
            downloaded=downloaded,
            total=total,
        )

    def on_extract(current: int, total: int) -> None:
        reporter.emit(
            InstallStage.EXTRACTING,
            percent(current, total),
            "Extracting package...",
            current=current,
            entries_total=total,
        )

    def populate(staging: Path) -> tuple[int, list[str]]:
        reporter.emit(InstallStage.DOWNLOADING, 0.0, f"Downloading '{asset.name}'", downloaded=0)
        download_file(
            session, asset.browser_download_url, cache_zip, on_download, config.distribution
        )

        reporter.emit(InstallStage.EXTRACTING, 0.0, "Extracting package...", current=0)
        extract_zip(cache_zip, staging, on_extract)

        skipped: list[str] = []
        if config.distribution.patchers.enabled:
            try:
                skipped = sync_patchers(config, session, staging, reporter)
            except SaveCrateError as exc:
                logger.warning("Failed to synchronize patchers: %s", exc)
                reporter.emit(
                    InstallStage.PATCHERS, 100.0, f"Skipping patchers synchronization: {exc}"
                )

        restored = 0
        if restore_preserved:
            reporter.emit(InstallStage.RESTORING, 0.0, "Restoring preserved save data...")
            restored = restore_preserved_save_data(config, staging)
            reporter.emit(
                InstallStage.RESTORING, 100.0, f"Restored {restored} preserved save file(s)"
            )
        return restored, skipped

    ensure_dir(profile.parent)
    transaction = StagedTransaction(profile)
    restored, skipped = transaction.run(
        populate, validate=lambda staging: verify_required_files(config, staging)
    )

    reporter.emit(InstallStage.COMPLETE, 100.0, "Installation complete")
    logger.info("Installed %s (%s) into %s", tag, platform.value, profile)
    return InstallResult(
        tag=tag,
        platform=platform,
        asset_name=asset.name,
        profile_path=profile,
        restored_save_files=restored,
        skipped_patchers=skipped,
    )


def uninstall_profile(config: LauncherConfig, preserve_save_data: bool) -> UninstallResult:
    """Remove the installed profile, optionally keeping its save data.

    With ``preserve_save_data`` the supported save files are staged and
    committed to ``<home>/preserved_save_data`` before the profile is
    removed; the directory is left in place even when it is empty.
    Without it, previously preserved data is discarded.
    """
    profile = config.profile_root
    preserved = config.preserved_save_data_dir
    ensure_dir(profile.parent)

    with target_lock(profile):
        preserved_files = 0
        if preserve_save_data:
            files = [
                (source, Path(relative))
                for source, relative in collect_supported_profile_save_files(config)
            ]
            ensure_dir(preserved.parent)
            preserved_files = StagedTransaction(preserved).run(
                lambda staging: _copy_relative_tree(files, staging)
            )
        else:
            clean_path(preserved)

        removed = profile.exists()
        clean_path(profile)
        ensure_dir(profile)

    logger.info(
        "Uninstalled profile %s (preserved %d save files)", profile, preserved_files
    )
    return UninstallResult(
        profile_path=profile, removed_profile=removed, preserved_files=preserved_files
    )


# ---------------------------------------------------------------------------
# SaveData from an existing game directory
# ---------------------------------------------------------------------------


def resolve_source_save_data(config: LauncherConfig, source_game_dir: Path | str) -> tuple[Path, Path]:
    """Validate a game directory and return ``(game dir, its SaveData dir)``.

    Raises:
        ArchiveIOError: Not a directory, no game executable, or no SaveData.
    """
    text = str(source_game_dir).strip()
    if not text:
        raise ConfigError("Source game path is required")
    game_dir = Path(text)
    if not game_dir.is_dir():
        raise ArchiveIOError(f"Source path is not a directory: {game_dir}", game_dir)
    if not (game_dir / config.paths.game_executable).is_file():
        raise ArchiveIOError(
            f"The selected folder is not a game installation directory: {game_dir}", game_dir
        )

    source_save_data = game_dir / to_relative_path(config.paths.save_data_root)
    if not source_save_data.is_dir():
        raise ArchiveIOError(
            f"SaveData directory was not found in the selected game folder: {source_save_data}",
            source_save_data,
        )
    return game_dir, source_save_data


def preview_savedata(config: LauncherConfig, source_game_dir: Path | str) -> SaveDataPreviewResult:
    game_dir, source_save_data = resolve_source_save_data(config, source_game_dir)
    return SaveDataPreviewResult(
        source_game_path=game_dir,
        source_save_data_path=source_save_data,
        presets=list_presets_from_save_data_dir(source_save_data),
        file_count=len(collect_files_recursive(source_save_data)),
    )


def import_savedata_into_profile(
    config: LauncherConfig, source_game_dir: Path | str
) -> SaveDataImportResult:
    """Replace the profile's SaveData with a copy of the game's SaveData."""
    preview = preview_savedata(config, source_game_dir)
    target = save_data_dir(config)
    ensure_dir(target.parent)

    transaction = StagedTransaction(
        target,
        staging_suffix=SAVE_DATA_STAGING_SUFFIX,
        backup_suffix=SAVE_DATA_BACKUP_SUFFIX,
        lock_path=config.profile_root,
    )
    copied = transaction.run(
        lambda staging: copy_directory_recursive(preview.source_save_data_path, staging)
    )

    logger.info("Imported %d SaveData files into %s", copied, target)
    return SaveDataImportResult(
        source_save_data_path=preview.source_save_data_path,
        target_save_data_path=target,
        imported_files=copied,
        imported_presets=len(preview.presets),
    )


def merge_savedata_presets(
    config: LauncherConfig, source_game_dir: Path | str
) -> SaveDataPresetMergeResult:
    """Add the game directory's presets to the profile's."""
    _, source_save_data = resolve_source_save_data(config, source_game_dir)
    summary = import_presets_from_save_data_dir(config, source_save_data)
    return SaveDataPresetMergeResult(
        source_save_data_path=source_save_data, imported_presets=summary.imported_presets
    )


def merge_preserved_presets(config: LauncherConfig) -> SaveDataPresetMergeResult:
    """Add presets kept by a preserving uninstall to the profile's."""
    source_save_data = config.preserved_save_data_dir / to_relative_path(
        config.paths.save_data_root
    )
    summary = import_presets_from_save_data_dir(config, source_save_data)
    return SaveDataPresetMergeResult(
        source_save_data_path=source_save_data, imported_presets=summary.imported_presets
    )
