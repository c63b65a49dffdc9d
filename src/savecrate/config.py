"""
Launcher configuration — built once at startup, passed explicitly.

Holds everything the archive engine consumes from the outside world:
the profile root, the required-file checklist, the inclusion regexes
for migration, the LocalLow allowed root, archive magic/extensions,
and release distribution endpoints.

Loaded from ``$SAVECRATE_HOME/config.yaml``. A missing file yields
defaults; an invalid one raises ConfigError.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from . import SAVECRATE_HOME
from .errors import ConfigError

logger = logging.getLogger("savecrate.config")

CONFIG_FILE_NAME = "config.yaml"


def _non_empty(value: str, name: str) -> str:
    if not value or not value.strip():
        raise ValueError(f"'{name}' must not be empty")
    return value.strip()


class PathsConfig(BaseModel):
    """Filesystem locations the engine reads and writes."""

    profile_root: Path = Path("~/.savecrate/profile")
    game_executable: str = "Among Us.exe"
    save_data_root: str = "SuperNewRolesNext/SaveData"
    locallow_root: str = "Innersloth/SuperNewRolesNext"
    locallow_base: Optional[Path] = None
    required_files: list[str] = Field(
        default_factory=lambda: ["BepInEx/core/BepInEx.Core.dll", "winhttp.dll"]
    )

    @field_validator("game_executable", "save_data_root", "locallow_root")
    @classmethod
    def _check_non_empty(cls, value: str, info) -> str:
        return _non_empty(value, f"paths.{info.field_name}")

    @field_validator("required_files")
    @classmethod
    def _check_required_files(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("'paths.required_files' must contain at least one entry")
        return [_non_empty(item, f"paths.required_files[{i}]") for i, item in enumerate(value)]

    @property
    def resolved_profile_root(self) -> Path:
        """Profile root with ``~`` expanded."""
        return Path(self.profile_root).expanduser()


class MigrationConfig(BaseModel):
    """Migration archive format and inclusion rules."""

    extension: str = "snrmig"
    magic: str = "SNRMIGR1"
    profile_include_patterns: list[str] = Field(
        default_factory=lambda: [
            r"^SuperNewRolesNext/SaveData/.+",
            r"^BepInEx/config/[^/]+\.cfg$",
        ]
    )

    @field_validator("extension")
    @classmethod
    def _check_extension(cls, value: str) -> str:
        value = _non_empty(value, "migration.extension")
        if not value.isascii() or not value.isalnum():
            raise ValueError("'migration.extension' must be alphanumeric")
        return value

    @field_validator("magic")
    @classmethod
    def _check_magic(cls, value: str) -> str:
        return _non_empty(value, "migration.magic")

    @field_validator("profile_include_patterns")
    @classmethod
    def _check_patterns(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError(
                "'migration.profile_include_patterns' must contain at least one entry"
            )
        for idx, pattern in enumerate(value):
            _non_empty(pattern, f"migration.profile_include_patterns[{idx}]")
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(
                    f"'migration.profile_include_patterns[{idx}]' is not a valid regex: {exc}"
                ) from exc
        return value

    @property
    def magic_bytes(self) -> bytes:
        """Configured container magic as bytes."""
        return self.magic.encode("utf-8")

    def compiled_patterns(self) -> list[re.Pattern[str]]:
        """Compile the profile inclusion regexes."""
        return [re.compile(p) for p in self.profile_include_patterns]


class PresetsConfig(BaseModel):
    """Preset archive settings."""

    extension: str = "snrpresets"

    @field_validator("extension")
    @classmethod
    def _check_extension(cls, value: str) -> str:
        value = _non_empty(value, "presets.extension")
        if not value.isascii() or not value.isalnum():
            raise ValueError("'presets.extension' must be alphanumeric")
        return value


class PatchersConfig(BaseModel):
    """Patcher synchronization endpoints."""

    enabled: bool = True
    manifest_url: str = "https://update.supernewroles.com/patchers/data.json"
    base_url: str = "https://update.supernewroles.com/patchers/"


class DistributionConfig(BaseModel):
    """Where releases come from and how they are fetched."""

    github_repo: str = "SuperNewRoles/SuperNewRoles"
    api_base_url: str = "https://api.github.com"
    asset_suffixes: dict[str, str] = Field(
        default_factory=lambda: {"steam": "_Steam.zip", "epic": "_Epic.zip"}
    )
    patchers: PatchersConfig = Field(default_factory=PatchersConfig)
    user_agent: str = "savecrate/0.1"
    connect_timeout: float = 30.0
    read_timeout: float = 600.0

    @field_validator("github_repo")
    @classmethod
    def _check_repo(cls, value: str) -> str:
        value = _non_empty(value, "distribution.github_repo")
        owner, _, repo = value.partition("/")
        if not owner or not repo or "/" in repo:
            raise ValueError("'distribution.github_repo' must be '<owner>/<repo>'")
        return value

    @property
    def releases_url(self) -> str:
        """Release listing endpoint."""
        return f"{self.api_base_url.rstrip('/')}/repos/{self.github_repo}/releases?per_page=30"

    def release_by_tag_url(self, tag: str) -> str:
        """Single release endpoint for ``tag``."""
        return f"{self.api_base_url.rstrip('/')}/repos/{self.github_repo}/releases/tags/{tag}"


class LauncherConfig(BaseModel):
    """Complete configuration consumed by the archive engine."""

    mod_id: str = "snr"
    home: Path = Path(SAVECRATE_HOME)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    migration: MigrationConfig = Field(default_factory=MigrationConfig)
    presets: PresetsConfig = Field(default_factory=PresetsConfig)
    distribution: DistributionConfig = Field(default_factory=DistributionConfig)

    @field_validator("mod_id")
    @classmethod
    def _check_mod_id(cls, value: str) -> str:
        return _non_empty(value, "mod_id")

    @property
    def home_path(self) -> Path:
        """Application data directory with ``~`` expanded."""
        return Path(self.home).expanduser()

    @property
    def profile_root(self) -> Path:
        """Profile directory with ``~`` expanded."""
        return self.paths.resolved_profile_root

    @property
    def preserved_save_data_dir(self) -> Path:
        """Where uninstall keeps save data for the next install."""
        return self.home_path / "preserved_save_data"


def load_config(path: Optional[Path] = None) -> LauncherConfig:
    """Load the launcher configuration from YAML.

    Args:
        path: Config file. Defaults to ``$SAVECRATE_HOME/config.yaml``.

    Returns:
        LauncherConfig: Parsed configuration, or defaults if the file
        does not exist.

    Raises:
        ConfigError: If the file cannot be parsed or fails validation.
    """
    config_file = (path or Path(SAVECRATE_HOME) / CONFIG_FILE_NAME).expanduser()
    if not config_file.exists():
        logger.debug("No config at %s, using defaults", config_file)
        return LauncherConfig()

    try:
        data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to read config '{config_file}': {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config '{config_file}' must be a mapping")

    try:
        return LauncherConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config '{config_file}': {exc}") from exc


def save_config(config: LauncherConfig, path: Optional[Path] = None) -> Path:
    """Write ``config`` as YAML and return the file path."""
    config_file = (path or config.home_path / CONFIG_FILE_NAME).expanduser()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(
        yaml.safe_dump(config.model_dump(mode="json"), default_flow_style=False),
        encoding="utf-8",
    )
    return config_file
