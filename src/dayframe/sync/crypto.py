"""
Encryption primitive -- password-derived AES-GCM over opaque strings.

Key derivation:
    PBKDF2-HMAC-SHA256, 100 000 iterations, 16-byte per-account salt,
    32-byte output (AES-256).

Payload format:
    base64( IV[12] || ciphertext || tag[16] )

One self-describing string per encrypted field. This module knows
nothing about record shapes; callers JSON-serialize structured values
before handing them over.

The async functions push the CPU-bound work onto a worker thread so the
event loop stays responsive during a 100k-iteration derivation.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..errors import DecryptionFailed

SALT_LENGTH = 16
IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000
ENCRYPTION_VERSION = 1


def generate_salt() -> bytes:
    """Fresh random salt for a new account."""
    return os.urandom(SALT_LENGTH)


def salt_to_b64(salt: bytes) -> str:
    return base64.b64encode(salt).decode("ascii")


def b64_to_salt(value: str) -> bytes:
    return base64.b64decode(value)


def derive_key_sync(
    password: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS
) -> bytes:
    """Derive a 32-byte AES key from a password.

    Args:
        password: The account password.
        salt: Per-account salt (16 bytes).
        iterations: PBKDF2 rounds.

    Returns:
        Raw key bytes.
    """
    kdf = PBKDF2HMAC(
        algorithm=SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def encrypt_sync(plaintext: str, key: bytes) -> str:
    """Encrypt a string with AES-256-GCM under a fresh random IV."""
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return base64.b64encode(iv + sealed).decode("ascii")


def decrypt_sync(payload: str, key: bytes) -> str:
    """Decrypt a payload produced by :func:`encrypt_sync`.

    Raises:
        DecryptionFailed: On malformed base64, a truncated payload, a
            wrong key, tampering, or non-UTF-8 plaintext.
    """
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise DecryptionFailed("Encrypted payload is not valid base64") from exc

    if len(raw) < IV_LENGTH + TAG_LENGTH:
        raise DecryptionFailed("Encrypted payload is truncated")

    iv, sealed = raw[:IV_LENGTH], raw[IV_LENGTH:]
    try:
        plaintext = AESGCM(key).decrypt(iv, sealed, None)
    except InvalidTag as exc:
        raise DecryptionFailed(
            "Authentication failed: wrong password or corrupted payload"
        ) from exc
    except ValueError as exc:
        raise DecryptionFailed(f"Invalid key: {exc}") from exc

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionFailed("Decrypted payload is not UTF-8") from exc


async def derive_key(
    password: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS
) -> bytes:
    return await asyncio.to_thread(derive_key_sync, password, salt, iterations)


async def encrypt(plaintext: str, key: bytes) -> str:
    return await asyncio.to_thread(encrypt_sync, plaintext, key)


async def decrypt(payload: str, key: bytes) -> str:
    return await asyncio.to_thread(decrypt_sync, payload, key)
