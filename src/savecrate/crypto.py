"""
Password-based authenticated encryption for archive payloads.

Argon2id (19456 KiB, 2 passes, 1 lane) stretches the password into a
32-byte key; XChaCha20-Poly1305 (IETF) seals the payload. Both come from
libsodium through PyNaCl. The derived key is held in a bytearray that
is zeroed after the cipher call; the immutable copies PyNaCl makes
cannot be wiped from Python, so the wipe is best-effort.
"""

from __future__ import annotations

import logging
from typing import Optional

import nacl.exceptions
import nacl.pwhash
import nacl.secret
import nacl.utils

from .errors import DecryptionError, PasswordRequiredError

logger = logging.getLogger("savecrate.crypto")

SALT_LEN = 16
NONCE_LEN = 24
KEY_LEN = 32
TAG_LEN = 16
ARGON2_MEMORY_KIB = 19_456
ARGON2_ITERATIONS = 2

DECRYPT_FAILED_MESSAGE = (
    "Failed to decrypt .{ext}. The password may be incorrect or the file is corrupted."
)


def _require_password(password: Optional[str]) -> bytes:
    if not password:
        raise PasswordRequiredError("Password is required when encryption is enabled")
    return password.encode("utf-8")


def derive_key(password: str, salt: bytes) -> bytearray:
    """Stretch ``password`` with Argon2id.

    Args:
        password: Non-empty password.
        salt: 16 random bytes stored beside the ciphertext.

    Returns:
        bytearray: 32-byte key. Callers must zero it after use.
    """
    if len(salt) != SALT_LEN:
        raise ValueError(f"Salt must be {SALT_LEN} bytes, got {len(salt)}")
    raw = nacl.pwhash.argon2id.kdf(
        KEY_LEN,
        _require_password(password),
        salt,
        opslimit=ARGON2_ITERATIONS,
        memlimit=ARGON2_MEMORY_KIB * 1024,
    )
    return bytearray(raw)


def _wipe(buffer: bytearray) -> None:
    for i in range(len(buffer)):
        buffer[i] = 0


def encrypt_payload(plaintext: bytes, password: str) -> tuple[bytes, bytes, bytes]:
    """Encrypt ``plaintext`` under a fresh salt and nonce.

    Returns:
        tuple: (salt, nonce, ciphertext-with-tag).
    """
    _require_password(password)
    salt = nacl.utils.random(SALT_LEN)
    nonce = nacl.utils.random(NONCE_LEN)

    key = derive_key(password, salt)
    try:
        box = nacl.secret.Aead(bytes(key))
        sealed = box.encrypt(plaintext, nonce=nonce)
    finally:
        _wipe(key)

    logger.debug("Encrypted %d bytes", len(plaintext))
    return salt, nonce, sealed.ciphertext


def decrypt_payload(
    ciphertext: bytes,
    password: Optional[str],
    salt: bytes,
    nonce: bytes,
    extension: str = "snrmig",
) -> bytes:
    """Open an AEAD-sealed payload.

    Raises:
        PasswordRequiredError: If ``password`` is empty.
        DecryptionError: On any authentication failure. Wrong password
            and tampered ciphertext produce the same message.
    """
    if not password:
        raise PasswordRequiredError(
            f"This .{extension} file is encrypted. Please provide a password."
        )

    # Shorter than the Poly1305 tag cannot authenticate.
    if len(ciphertext) < TAG_LEN:
        raise DecryptionError(DECRYPT_FAILED_MESSAGE.format(ext=extension))

    key = derive_key(password, salt)
    try:
        box = nacl.secret.Aead(bytes(key))
        return box.decrypt(ciphertext, nonce=nonce)
    except nacl.exceptions.CryptoError as exc:
        raise DecryptionError(DECRYPT_FAILED_MESSAGE.format(ext=extension)) from exc
    finally:
        _wipe(key)
