"""Tests for host service selection."""

from __future__ import annotations

from pathlib import Path

import pytest

from savecrate.config import LauncherConfig, PathsConfig
from savecrate.errors import UnsupportedPlatformError
from savecrate.host import StaticHost, UnsupportedHost, WindowsHost, host_for


class TestHosts:
    def test_windows_locallow(self) -> None:
        host = WindowsHost({"USERPROFILE": "/users/player"})
        assert host.locallow_base() == Path("/users/player") / "AppData" / "LocalLow"

    def test_windows_without_profile(self) -> None:
        with pytest.raises(UnsupportedPlatformError):
            WindowsHost({}).locallow_base()

    def test_unsupported_host(self) -> None:
        with pytest.raises(UnsupportedPlatformError, match="locallow_base"):
            UnsupportedHost().locallow_base()


class TestHostFor:
    def test_configured_override_wins(self, tmp_path: Path) -> None:
        config = LauncherConfig(paths=PathsConfig(locallow_base=tmp_path))
        host = host_for(config, platform="win32")
        assert isinstance(host, StaticHost)
        assert host.locallow_base() == tmp_path

    def test_windows(self) -> None:
        assert isinstance(host_for(LauncherConfig(), platform="win32"), WindowsHost)

    def test_other_platforms(self) -> None:
        assert isinstance(host_for(LauncherConfig(), platform="linux"), UnsupportedHost)
