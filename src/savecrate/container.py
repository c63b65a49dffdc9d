"""
Archive container codec.

A container wraps a zip payload behind a short header::

    magic ++ [version] ++ [flags] ++ payload

With the encrypted flag set the payload is
``salt(16) ++ nonce(24) ++ ciphertext``. Input that starts with neither
the configured magic nor the legacy one is treated as a bare zip.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .crypto import NONCE_LEN, SALT_LEN, decrypt_payload, encrypt_payload
from .errors import FormatError, PasswordRequiredError

logger = logging.getLogger("savecrate.container")

LEGACY_MAGIC = b"SNRDATA1"
LEGACY_EXTENSION = "snrdata"
ARCHIVE_VERSION = 1
FLAG_ENCRYPTED = 0x01


@dataclass
class ArchiveContainer:
    """Parsed container header plus the raw payload."""

    magic: bytes
    version: int
    flags: int
    payload: bytes

    @property
    def encrypted(self) -> bool:
        return bool(self.flags & FLAG_ENCRYPTED)


def build_container(
    zip_bytes: bytes,
    magic: bytes,
    encrypt: bool = False,
    password: Optional[str] = None,
) -> tuple[bytes, bool]:
    """Wrap ``zip_bytes`` in a container.

    Args:
        zip_bytes: Serialized zip archive.
        magic: Configured container magic.
        encrypt: Seal the payload with ``password``.
        password: Required (non-empty) when ``encrypt`` is set.

    Returns:
        tuple: (container bytes, whether the payload was encrypted).
    """
    if not encrypt:
        return magic + bytes([ARCHIVE_VERSION, 0]) + zip_bytes, False

    if not password:
        raise PasswordRequiredError("Password is required when encryption is enabled")

    salt, nonce, ciphertext = encrypt_payload(zip_bytes, password)
    header = magic + bytes([ARCHIVE_VERSION, FLAG_ENCRYPTED])
    return header + salt + nonce + ciphertext, True


def parse_container(
    data: bytes, magic: bytes, extension: str = LEGACY_EXTENSION
) -> Optional[ArchiveContainer]:
    """Read the container header.

    Returns:
        ArchiveContainer, or None if ``data`` carries no known magic.

    Raises:
        FormatError: On a truncated header, unknown version, or unknown flags.
    """
    if data.startswith(magic):
        active = magic
    elif data.startswith(LEGACY_MAGIC):
        active = LEGACY_MAGIC
    else:
        return None

    if len(data) < len(active) + 2:
        raise FormatError(f"Invalid .{extension} header")

    version = data[len(active)]
    if version != ARCHIVE_VERSION:
        raise FormatError(f"Unsupported .{extension} version: {version}")

    flags = data[len(active) + 1]
    if flags & ~FLAG_ENCRYPTED:
        raise FormatError(f"Unsupported .{extension} flags")

    return ArchiveContainer(
        magic=active, version=version, flags=flags, payload=data[len(active) + 2:]
    )


def open_container(
    data: bytes,
    magic: bytes,
    password: Optional[str] = None,
    extension: str = LEGACY_EXTENSION,
) -> tuple[bytes, bool]:
    """Recover the zip payload from container (or bare zip) bytes.

    Returns:
        tuple: (zip bytes, whether the container was encrypted).

    Raises:
        FormatError: Bad header or an encrypted payload that is too short.
        PasswordRequiredError: Encrypted container without a password.
        DecryptionError: Wrong password or tampered payload.
    """
    container = parse_container(data, magic, extension)
    if container is None:
        return data, False
    if not container.encrypted:
        return container.payload, False

    payload = container.payload
    if len(payload) < SALT_LEN + NONCE_LEN + 1:
        raise FormatError(f"Encrypted .{extension} payload is too short")

    salt = payload[:SALT_LEN]
    nonce = payload[SALT_LEN:SALT_LEN + NONCE_LEN]
    ciphertext = payload[SALT_LEN + NONCE_LEN:]
    plaintext = decrypt_payload(ciphertext, password, salt, nonce, extension=extension)
    logger.debug("Decrypted .%s payload (%d bytes)", extension, len(plaintext))
    return plaintext, True


# ---------------------------------------------------------------------------
# Archive paths
# ---------------------------------------------------------------------------


def extension_is_supported(path: Path, *extensions: str) -> bool:
    """True if ``path`` ends with one of ``extensions`` (case-insensitive)."""
    suffix = path.suffix.lstrip(".").lower()
    return bool(suffix) and suffix in {ext.lower() for ext in extensions}


def resolve_output_path(
    output_path: Optional[Path | str],
    extension: str,
    make_default: Callable[[], Path],
) -> Path:
    """Decide where an export lands.

    A blank ``output_path`` uses ``make_default()``. A path without an
    extension gets ``.<extension>`` appended; any other extension is
    rejected.
    """
    if output_path is None or not str(output_path).strip():
        output = make_default()
    else:
        output = Path(str(output_path).strip())

    if not output.suffix:
        return output.with_name(f"{output.name}.{extension}")
    if output.suffix.lstrip(".").lower() != extension.lower():
        raise FormatError(f"Export path must end with .{extension}: {output}")
    return output
