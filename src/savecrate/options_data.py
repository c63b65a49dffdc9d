"""
Options.data — the preset record codec.

Binary layout (little-endian)::

    [version:u8][checksum_seed:u8][checksum:u8]
    [current_preset:i32][name_count:i32]
    name_count * ([preset_id:i32][name:varstring])

The checksum byte must equal ``seed * seed`` truncated to a byte.
Each preset also owns an opaque sibling file ``PresetOptions_<id>.data``
that is only ever copied, never parsed.
"""

from __future__ import annotations

import logging
import struct
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from .errors import ArchiveIOError, ChecksumMismatchError, FormatError
from .fsutil import read_bytes, write_bytes
from .varint import read_length_prefixed_utf8, write_length_prefixed_utf8

logger = logging.getLogger("savecrate.options_data")

OPTIONS_FILE_NAME = "Options.data"
PRESET_FILE_PREFIX = "PresetOptions_"
PRESET_FILE_SUFFIX = ".data"
MIN_OPTIONS_LENGTH = 11
CHECKSUM_SEED_RANGE = 15
MAX_PRESET_ID = 2**31 - 1

_I32 = struct.Struct("<i")


@dataclass
class OptionsData:
    """Decoded Options.data record.

    Attributes:
        version: Record format version (0 is treated as 1 on write).
        current_preset: Selected preset id; may be stale until an
            orchestrator self-heals it.
        preset_names: Preset id -> display name.
    """

    version: int = 1
    current_preset: int = 0
    preset_names: dict[int, str] = field(default_factory=dict)

    @property
    def effective_version(self) -> int:
        """Version actually written: never below 1."""
        return max(self.version, 1)


def _read_i32(data: bytes, cursor: int, field_name: str) -> tuple[int, int]:
    if cursor + 4 > len(data):
        raise FormatError(f"Unexpected end of Options.data while reading {field_name}.")
    return _I32.unpack_from(data, cursor)[0], cursor + 4


def parse_options_data(data: bytes) -> OptionsData:
    """Decode an Options.data record.

    Negative preset ids are dropped from the result (legacy corruption
    tolerance). Trailing bytes after the last entry are ignored.

    Raises:
        ChecksumMismatchError: If the checksum byte does not match.
        FormatError: On truncation, a negative name count, or bad UTF-8.
    """
    if len(data) < MIN_OPTIONS_LENGTH:
        raise FormatError("Options.data is too short to parse.")

    version, seed, checksum = data[0], data[1], data[2]
    if (seed * seed) & 0xFF != checksum:
        raise ChecksumMismatchError(
            "Options.data checksum validation failed (seed^2 check mismatch)."
        )

    cursor = 3
    current_preset, cursor = _read_i32(data, cursor, "current preset")
    name_count, cursor = _read_i32(data, cursor, "preset name count")
    if name_count < 0:
        raise FormatError("Options.data contains a negative preset name count.")

    names: dict[int, str] = {}
    for _ in range(name_count):
        preset_id, cursor = _read_i32(data, cursor, "preset id")
        name, cursor = read_length_prefixed_utf8(data, cursor)
        if preset_id >= 0:
            names[preset_id] = name
        else:
            logger.debug("Dropping negative preset id %d from Options.data", preset_id)

    return OptionsData(version=version, current_preset=current_preset, preset_names=names)


def checksum_seed() -> int:
    """Process-local, time-derived seed in ``[0, 15)``."""
    return (time.time_ns() % 1_000_000_000) % CHECKSUM_SEED_RANGE


def build_options_data(options: OptionsData, seed: Optional[int] = None) -> bytes:
    """Encode ``options``; entries are written in ascending id order."""
    if seed is None:
        seed = checksum_seed()
    if not 0 <= seed <= 0xFF:
        raise ValueError(f"Checksum seed out of range: {seed}")

    out = bytearray()
    out.append(options.effective_version & 0xFF)
    out.append(seed)
    out.append((seed * seed) & 0xFF)
    out += _I32.pack(options.current_preset)
    out += _I32.pack(len(options.preset_names))
    for preset_id in sorted(options.preset_names):
        out += _I32.pack(preset_id)
        write_length_prefixed_utf8(options.preset_names[preset_id], out)
    return bytes(out)


def load_options_data(path: Path) -> Optional[OptionsData]:
    """Parse the Options.data at ``path``; None if it does not exist."""
    if not path.is_file():
        return None
    return parse_options_data(read_bytes(path))


def write_options_data(path: Path, options: OptionsData) -> None:
    """Serialize ``options`` to ``path``."""
    write_bytes(path, build_options_data(options))


# ---------------------------------------------------------------------------
# Preset data files
# ---------------------------------------------------------------------------


def preset_file_name(preset_id: int) -> str:
    """Deterministic data file name for ``preset_id``."""
    return f"{PRESET_FILE_PREFIX}{preset_id}{PRESET_FILE_SUFFIX}"


def preset_file_path(save_data_dir: Path, preset_id: int) -> Path:
    return save_data_dir / preset_file_name(preset_id)


def _parse_id(numeric: str) -> Optional[int]:
    try:
        value = int(numeric)
    except ValueError:
        return None
    if numeric.strip() != numeric or not 0 <= value <= MAX_PRESET_ID:
        return None
    return value


def parse_preset_id_from_file_name(file_name: str) -> Optional[int]:
    """``PresetOptions_7.data`` -> 7; anything else -> None."""
    if not (file_name.startswith(PRESET_FILE_PREFIX) and file_name.endswith(PRESET_FILE_SUFFIX)):
        return None
    return _parse_id(file_name[len(PRESET_FILE_PREFIX):-len(PRESET_FILE_SUFFIX)])


def parse_preset_id_from_archive_path(path: str, save_data_root: str) -> Optional[int]:
    """Match ``<save_data_root>/PresetOptions_<id>.data`` case-insensitively."""
    normalized = path.replace("\\", "/")
    prefix = f"{save_data_root.strip('/')}/{PRESET_FILE_PREFIX}".lower()
    lower = normalized.lower()
    if not lower.startswith(prefix) or not lower.endswith(PRESET_FILE_SUFFIX):
        return None
    start, end = len(prefix), len(normalized) - len(PRESET_FILE_SUFFIX)
    if end <= start:
        return None
    return _parse_id(normalized[start:end])


def collect_existing_preset_ids(save_data_dir: Path) -> set[int]:
    """Ids of every ``PresetOptions_<id>.data`` file on disk."""
    ids: set[int] = set()
    if not save_data_dir.is_dir():
        return ids
    try:
        entries = list(save_data_dir.iterdir())
    except OSError as exc:
        raise ArchiveIOError(
            f"Failed to read SaveData directory '{save_data_dir}': {exc}", save_data_dir
        ) from exc
    for entry in entries:
        if not entry.is_file():
            continue
        preset_id = parse_preset_id_from_file_name(entry.name)
        if preset_id is not None:
            ids.add(preset_id)
    return ids


class PresetIdAllocator:
    """Hands out ``max(used) + 1``; never reuses an id within a batch."""

    def __init__(self, used_ids: Iterable[int] = ()):
        self._highest = max((i for i in used_ids if i >= 0), default=-1)

    def allocate(self) -> int:
        if self._highest >= MAX_PRESET_ID:
            raise FormatError("No free preset id remains for import.")
        self._highest += 1
        return self._highest


# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------


def default_preset_name(preset_id: int) -> str:
    return f"Preset {preset_id + 1}"


def display_name(preset_id: int, name: str) -> str:
    """Trimmed name, or the default name when blank."""
    return name.strip() or default_preset_name(preset_id)


def normalize_name_key(name: str) -> str:
    return name.strip().lower()


def make_unique_name(base_name: str, used_names: set[str]) -> str:
    """Append `` (2)``, `` (3)``, ... until the name is unused.

    Args:
        base_name: Requested name; blank becomes ``"Preset"``.
        used_names: Normalized keys already taken (see normalize_name_key).
    """
    base = base_name.strip() or "Preset"
    if normalize_name_key(base) not in used_names:
        return base
    index = 2
    while True:
        candidate = f"{base} ({index})"
        if normalize_name_key(candidate) not in used_names:
            return candidate
        index += 1
