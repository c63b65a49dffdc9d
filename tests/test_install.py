"""Tests for the install pipeline, uninstall, and SaveData import."""

from __future__ import annotations

import hashlib
import io
import json
import zipfile
from pathlib import Path
from typing import Optional

import pytest
import requests

from savecrate.config import LauncherConfig
from savecrate.errors import (
    ArchiveIOError,
    ConfigError,
    DownloadError,
    FormatError,
    NetworkUnreachableError,
    TargetBusyError,
)
from savecrate.install import (
    GamePlatform,
    import_savedata_into_profile,
    install_release,
    list_releases,
    merge_preserved_presets,
    merge_savedata_presets,
    preserved_save_data_status,
    preview_savedata,
    sync_patchers,
    uninstall_profile,
)
from savecrate.options_data import load_options_data
from savecrate.progress import InstallStage, ProgressEvent
from savecrate.transaction import target_lock

from conftest import SAVE_DATA_ROOT, write_file

TAG = "v2.4.0"
STEAM_URL = "https://downloads.example.test/SNR_v2.4.0_Steam.zip"


class FakeResponse:
    """Just enough of requests.Response for the download helpers."""

    def __init__(self, body: bytes = b"", status: int = 200, chunk: int = 1024):
        self.status_code = status
        self.ok = 200 <= status < 300
        self.headers = {"Content-Length": str(len(body))}
        self._body = body
        self._chunk = chunk

    def json(self):
        return json.loads(self._body.decode("utf-8"))

    def iter_content(self, chunk_size: int = 1):
        for start in range(0, len(self._body), self._chunk):
            yield self._body[start:start + self._chunk]

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class FakeSession:
    """Maps URLs to canned responses (or exceptions)."""

    def __init__(self, routes: dict[str, object]):
        self.routes = routes
        self.requested: list[str] = []

    def get(self, url: str, **kwargs) -> FakeResponse:
        self.requested.append(url)
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(status=404)
        if isinstance(route, Exception):
            raise route
        return route


def _json(payload) -> FakeResponse:
    return FakeResponse(json.dumps(payload).encode("utf-8"))


def _package(extra: Optional[dict[str, bytes]] = None, required: bool = True) -> bytes:
    files = {"BepInEx/plugins/SuperNewRoles.dll": b"plugin" * 500}
    if required:
        files["BepInEx/core/BepInEx.Core.dll"] = b"core"
        files["winhttp.dll"] = b"winhttp"
    files.update(extra or {})
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buffer.getvalue()


def _release(tag: str = TAG, prerelease: bool = False, assets: Optional[list[str]] = None) -> dict:
    names = assets if assets is not None else [f"SNR_{tag}_Steam.zip", f"SNR_{tag}_Epic.zip"]
    return {
        "tag_name": tag,
        "name": f"SuperNewRoles {tag}",
        "prerelease": prerelease,
        "published_at": "2026-01-02T03:04:05Z",
        "assets": [
            {"name": name, "browser_download_url": f"https://downloads.example.test/{name}"}
            for name in names
        ],
    }


@pytest.fixture
def offline(config: LauncherConfig) -> LauncherConfig:
    config.distribution.patchers.enabled = False
    return config


def _session(config: LauncherConfig, package: bytes, **routes) -> FakeSession:
    table = {
        config.distribution.release_by_tag_url(TAG): _json(_release()),
        STEAM_URL: FakeResponse(package, chunk=256),
    }
    table.update(routes)
    return FakeSession(table)


class TestListReleases:
    def test_filters_prereleases_and_assetless(self, config: LauncherConfig) -> None:
        session = FakeSession({
            config.distribution.releases_url: _json([
                _release("v2.4.0"),
                _release("v2.5.0-beta", prerelease=True),
                _release("v2.3.9", assets=["source.tar.gz"]),
                _release("v2.3.0", assets=["SNR_v2.3.0_Epic.zip"]),
            ])
        })
        releases = list_releases(config, session)
        assert [r.tag for r in releases] == ["v2.4.0", "v2.3.0"]
        assert releases[0].published_at == "2026-01-02T03:04:05Z"

    def test_unexpected_payload(self, config: LauncherConfig) -> None:
        session = FakeSession({config.distribution.releases_url: _json({"message": "rate limited"})})
        with pytest.raises(DownloadError):
            list_releases(config, session)

    def test_network_down(self, config: LauncherConfig) -> None:
        session = FakeSession({config.distribution.releases_url: requests.ConnectionError("dns")})
        with pytest.raises(NetworkUnreachableError):
            list_releases(config, session)


class TestInstall:
    """Release install into a staged profile."""

    def test_installs_and_reports_progress(self, offline: LauncherConfig) -> None:
        write_file(offline.profile_root / "stale.txt", "from previous install")
        events: list[ProgressEvent] = []

        result = install_release(
            offline, TAG, "Steam", on_progress=events.append, session=_session(offline, _package())
        )

        profile = offline.profile_root
        assert result.platform is GamePlatform.STEAM
        assert result.asset_name == "SNR_v2.4.0_Steam.zip"
        assert (profile / "winhttp.dll").read_bytes() == b"winhttp"
        assert not (profile / "stale.txt").exists()
        assert (offline.home_path / "cache" / "releases" / TAG / "steam.zip").is_file()

        assert events[0].stage is InstallStage.RESOLVING
        assert events[-1].stage is InstallStage.COMPLETE
        assert events[-1].progress == 100.0
        progress = [e.progress for e in events]
        assert progress == sorted(progress)
        downloads = [e for e in events if e.stage is InstallStage.DOWNLOADING]
        assert max(e.progress for e in downloads) == pytest.approx(80.0)
        extracts = [e for e in events if e.stage is InstallStage.EXTRACTING]
        assert extracts[-1].current == extracts[-1].entries_total == 3

    def test_missing_required_file_keeps_old_profile(self, offline: LauncherConfig) -> None:
        write_file(offline.profile_root / "winhttp.dll", "old")
        events: list[ProgressEvent] = []

        with pytest.raises(FormatError, match="Missing required file"):
            install_release(
                offline, TAG, "steam", on_progress=events.append,
                session=_session(offline, _package(required=False)),
            )

        assert (offline.profile_root / "winhttp.dll").read_text() == "old"
        assert not (offline.profile_root / "BepInEx").exists()
        assert events[-1].stage is InstallStage.FAILED
        assert events[-1].progress == 0.0

    def test_restores_preserved_save_data(self, offline: LauncherConfig) -> None:
        write_file(offline.preserved_save_data_dir / SAVE_DATA_ROOT / "Options.data", b"kept")

        result = install_release(
            offline, TAG, "steam", restore_preserved=True, session=_session(offline, _package())
        )

        assert result.restored_save_files == 1
        assert (offline.profile_root / SAVE_DATA_ROOT / "Options.data").read_bytes() == b"kept"

    def test_epic_asset_missing(self, offline: LauncherConfig) -> None:
        session = _session(offline, _package(), **{
            offline.distribution.release_by_tag_url(TAG): _json(
                _release(assets=[f"SNR_{TAG}_Steam.zip"])
            )
        })
        with pytest.raises(DownloadError, match="_Epic.zip"):
            install_release(offline, TAG, GamePlatform.EPIC, session=session)

    def test_unknown_release(self, offline: LauncherConfig) -> None:
        with pytest.raises(DownloadError, match="status 404"):
            install_release(offline, "v0.0.1", "steam", session=FakeSession({}))

    def test_unsupported_platform(self, offline: LauncherConfig) -> None:
        with pytest.raises(ConfigError, match="Unsupported platform: xbox"):
            install_release(offline, TAG, "xbox", session=FakeSession({}))

    def test_unsafe_tag(self, offline: LauncherConfig) -> None:
        with pytest.raises(ConfigError):
            install_release(offline, "../escape", "steam", session=FakeSession({}))

    def test_busy_profile(self, offline: LauncherConfig) -> None:
        with target_lock(offline.profile_root):
            with pytest.raises(TargetBusyError):
                install_release(offline, TAG, "steam", session=_session(offline, _package()))

    def test_patcher_manifest_failure_is_not_fatal(self, config: LauncherConfig) -> None:
        patchers = config.distribution.patchers
        session = _session(config, _package(), **{patchers.manifest_url: FakeResponse(status=500)})

        install_release(config, TAG, "steam", session=session)
        assert (config.profile_root / "winhttp.dll").exists()


class TestSyncPatchers:
    def test_skips_unsafe_and_mismatched(self, config: LauncherConfig, tmp_path: Path) -> None:
        patchers = config.distribution.patchers
        good = b"good patcher"
        session = FakeSession({
            patchers.manifest_url: _json({
                "windows": ["Good.dll", "../Evil.dll", "Bad.dll", ""],
                "Good.dll": hashlib.md5(good).hexdigest().upper(),
                "Bad.dll": "00000000000000000000000000000000",
            }),
            patchers.base_url + "Good.dll": FakeResponse(good),
            patchers.base_url + "Bad.dll": FakeResponse(b"tampered"),
        })
        staging = tmp_path / "staging"

        skipped = sync_patchers(config, session, staging)

        patcher_dir = staging / "BepInEx" / "patchers"
        assert skipped == ["../Evil.dll", "Bad.dll"]
        assert (patcher_dir / "Good.dll").read_bytes() == good
        assert not (patcher_dir / "Bad.dll").exists()
        assert not (tmp_path / "staging" / "BepInEx" / "Evil.dll").exists()

    def test_empty_manifest(self, config: LauncherConfig, tmp_path: Path) -> None:
        session = FakeSession({config.distribution.patchers.manifest_url: _json({"linux": []})})
        assert sync_patchers(config, session, tmp_path) == []


class TestUninstall:
    """Profile removal with and without preserving save data."""

    @pytest.fixture
    def installed(self, config: LauncherConfig) -> LauncherConfig:
        write_file(config.profile_root / SAVE_DATA_ROOT / "Options.data", b"opts")
        write_file(config.profile_root / "BepInEx" / "config" / "mod.cfg", "cfg")
        write_file(config.profile_root / "winhttp.dll", b"dll")
        return config

    def test_preserve(self, installed: LauncherConfig) -> None:
        result = uninstall_profile(installed, preserve_save_data=True)

        preserved = installed.preserved_save_data_dir
        assert result.removed_profile
        assert result.preserved_files == 2
        assert (preserved / SAVE_DATA_ROOT / "Options.data").read_bytes() == b"opts"
        assert not (preserved / "winhttp.dll").exists()
        assert installed.profile_root.is_dir()
        assert not any(installed.profile_root.iterdir())
        status = preserved_save_data_status(installed)
        assert status.available and status.files == 2

    def test_preserve_with_nothing_to_keep(self, config: LauncherConfig) -> None:
        write_file(config.profile_root / "winhttp.dll", b"dll")
        result = uninstall_profile(config, preserve_save_data=True)
        assert result.preserved_files == 0
        assert config.preserved_save_data_dir.is_dir()
        assert not preserved_save_data_status(config).available

    def test_discard_drops_old_preserved_data(self, installed: LauncherConfig) -> None:
        write_file(installed.preserved_save_data_dir / "old.data", b"old")
        result = uninstall_profile(installed, preserve_save_data=False)

        assert result.preserved_files == 0
        assert not installed.preserved_save_data_dir.exists()
        assert not preserved_save_data_status(installed).available


class TestSaveDataFromGame:
    """SaveData copied or merged from an existing game directory."""

    @pytest.fixture
    def game_dir(self, config: LauncherConfig, tmp_path: Path, write_presets) -> Path:
        game = tmp_path / "Among Us"
        write_file(game / config.paths.game_executable, b"exe")
        save_data = write_presets(game / SAVE_DATA_ROOT, {0: "Casual", 1: "Ranked"})
        write_file(save_data / "stats" / "games.data", b"stats")
        return game

    def test_preview(self, config: LauncherConfig, game_dir: Path) -> None:
        preview = preview_savedata(config, str(game_dir))
        assert preview.source_save_data_path == game_dir / SAVE_DATA_ROOT
        assert [p.name for p in preview.presets] == ["Casual", "Ranked"]
        assert preview.file_count == 4

    def test_import_replaces_save_data(
        self, config: LauncherConfig, game_dir: Path, profile_save_data: Path
    ) -> None:
        write_file(profile_save_data / "old.data", b"old")

        result = import_savedata_into_profile(config, game_dir)

        assert result.imported_files == 4
        assert result.imported_presets == 2
        assert not (profile_save_data / "old.data").exists()
        assert (profile_save_data / "stats" / "games.data").read_bytes() == b"stats"

    def test_merge_presets(
        self, config: LauncherConfig, game_dir: Path, profile_save_data: Path, write_presets
    ) -> None:
        write_presets(profile_save_data, {0: "Casual"})

        result = merge_savedata_presets(config, game_dir)

        assert result.imported_presets == 2
        names = load_options_data(profile_save_data / "Options.data").preset_names
        assert names == {0: "Casual", 1: "Casual (2)", 2: "Ranked"}

    def test_not_a_game_directory(self, config: LauncherConfig, tmp_path: Path) -> None:
        (tmp_path / "random").mkdir()
        with pytest.raises(ArchiveIOError, match="not a game installation"):
            preview_savedata(config, tmp_path / "random")

    def test_blank_path(self, config: LauncherConfig) -> None:
        with pytest.raises(ConfigError):
            preview_savedata(config, "  ")

    def test_merge_preserved(self, config: LauncherConfig, write_presets) -> None:
        write_presets(config.preserved_save_data_dir / SAVE_DATA_ROOT, {0: "Kept"})
        result = merge_preserved_presets(config)
        assert result.imported_presets == 1
        assert load_options_data(
            config.profile_root / SAVE_DATA_ROOT / "Options.data"
        ).preset_names == {0: "Kept"}
