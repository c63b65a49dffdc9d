"""Host services: platform-specific locations behind a small interface."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Optional, Protocol

from .config import LauncherConfig
from .errors import UnsupportedPlatformError


class HostServices(Protocol):
    """What the engine needs from the operating system."""

    def locallow_base(self) -> Path:
        """Return the per-user LocalLow data directory."""
        ...


class WindowsHost:
    """Resolves LocalLow from ``%USERPROFILE%``."""

    def __init__(self, environ: Optional[dict[str, str]] = None):
        self._environ = environ if environ is not None else os.environ

    def locallow_base(self) -> Path:
        user_profile = self._environ.get("USERPROFILE")
        if not user_profile:
            raise UnsupportedPlatformError(
                "Failed to resolve Windows home directory for LocalLow path"
            )
        return Path(user_profile) / "AppData" / "LocalLow"


class UnsupportedHost:
    """Host without a LocalLow directory."""

    def locallow_base(self) -> Path:
        raise UnsupportedPlatformError(
            "LocalLow data is only available on Windows; "
            "set paths.locallow_base in config.yaml to override"
        )


class StaticHost:
    """Host with an explicitly configured LocalLow directory."""

    def __init__(self, locallow: Path):
        self._locallow = Path(locallow).expanduser()

    def locallow_base(self) -> Path:
        return self._locallow


def host_for(config: LauncherConfig, platform: str = sys.platform) -> HostServices:
    """Pick the host services implementation for ``config``."""
    if config.paths.locallow_base is not None:
        return StaticHost(config.paths.locallow_base)
    if platform.startswith("win"):
        return WindowsHost()
    return UnsupportedHost()
