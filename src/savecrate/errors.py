"""
Error taxonomy shared by every savecrate module.

Every error derives from SaveCrateError so the CLI (or any other
calling layer) can catch a single base class. Errors that concern a
file always carry the offending path.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class SaveCrateError(Exception):
    """Base class for all savecrate errors."""


class ArchiveIOError(SaveCrateError):
    """A file or directory could not be read, written, or removed."""

    def __init__(self, message: str, path: Optional[Path | str] = None):
        super().__init__(message)
        self.path = Path(path) if path is not None else None


class FormatError(SaveCrateError):
    """Binary or archive content is malformed or unsupported."""


class ChecksumMismatchError(FormatError):
    """Options.data checksum byte does not match its seed."""


class DecryptionError(SaveCrateError):
    """AEAD authentication failed.

    Deliberately covers both a wrong password and a corrupted
    ciphertext; the two cases must not be distinguishable.
    """


class PasswordRequiredError(SaveCrateError):
    """A password is needed but none (or an empty one) was given."""


class UnsafePathError(SaveCrateError):
    """An archive entry or relative path would escape its root."""


class NothingToExportError(SaveCrateError):
    """Export found no files to put into the archive."""


class PresetError(SaveCrateError):
    """A preset selection is invalid for the requested operation."""


class ConfigError(SaveCrateError):
    """The launcher configuration is missing or invalid."""


class UnsupportedPlatformError(SaveCrateError):
    """The host cannot provide a required platform location."""


class DownloadError(SaveCrateError):
    """An HTTP download failed."""


class NetworkUnreachableError(DownloadError):
    """The remote host could not be reached (connection or timeout)."""


class TransactionError(SaveCrateError):
    """A staged transaction failed during commit.

    Attributes:
        rolled_back: True when the previous target state was restored.
        manual_recovery_required: True when rollback itself failed.
    """

    def __init__(
        self,
        message: str,
        rolled_back: bool = False,
        manual_recovery_required: bool = False,
    ):
        super().__init__(message)
        self.rolled_back = rolled_back
        self.manual_recovery_required = manual_recovery_required


class TargetBusyError(TransactionError):
    """Another operation currently owns the target path."""
