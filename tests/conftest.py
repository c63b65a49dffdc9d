"""Shared test fixtures for savecrate."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import pytest

from savecrate.config import LauncherConfig, PathsConfig
from savecrate.options_data import OptionsData, preset_file_path, write_options_data

SAVE_DATA_ROOT = "SuperNewRolesNext/SaveData"
LOCALLOW_ROOT = "Innersloth/SuperNewRolesNext"


@pytest.fixture
def config(tmp_path: Path) -> LauncherConfig:
    """Launcher config rooted entirely under tmp_path.

    LocalLow is pinned through ``paths.locallow_base`` so the tests run
    the same on every platform.
    """
    return LauncherConfig(
        home=tmp_path / "home",
        paths=PathsConfig(
            profile_root=tmp_path / "profile",
            locallow_base=tmp_path / "locallow",
        ),
    )


@pytest.fixture
def profile_save_data(config: LauncherConfig) -> Path:
    """The profile's SaveData directory (created)."""
    path = config.profile_root / SAVE_DATA_ROOT
    path.mkdir(parents=True)
    return path


@pytest.fixture
def write_presets() -> Callable[..., Path]:
    """Write an Options.data plus preset data files into a SaveData dir.

    Call as ``write_presets(save_data, {0: "Alpha"}, current=0, with_data={0})``.
    Data files hold ``b"preset-<id>"``; by default every preset gets one.
    """

    def _write(
        save_data: Path,
        names: dict[int, str],
        current: int = 0,
        with_data: Optional[set[int]] = None,
    ) -> Path:
        save_data.mkdir(parents=True, exist_ok=True)
        write_options_data(
            save_data / "Options.data",
            OptionsData(version=1, current_preset=current, preset_names=dict(names)),
        )
        for preset_id in names if with_data is None else with_data:
            preset_file_path(save_data, preset_id).write_bytes(f"preset-{preset_id}".encode())
        return save_data

    return _write


def write_file(path: Path, content: str | bytes) -> Path:
    """Create ``path`` (and parents) with ``content``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        path.write_text(content, encoding="utf-8")
    else:
        path.write_bytes(content)
    return path
