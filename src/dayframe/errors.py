"""Exception hierarchy shared across the dayframe core."""

from __future__ import annotations

from typing import Optional


class DayframeError(Exception):
    """Base class for every error raised by dayframe."""


class DecryptionFailed(DayframeError):
    """Raised when a payload cannot be decrypted.

    Covers wrong passwords, corrupted or truncated payloads, and
    tampered ciphertext. Never carries plaintext.
    """


class EncryptionNotInitialized(DayframeError):
    """Raised when a key is requested for an account without a salt."""


class NotAuthenticated(DayframeError):
    """Raised when an operation needs an account and none is active."""


class StorageQuotaExceeded(DayframeError):
    """Raised by a local store when a write would exceed its quota."""


class CommitLocked(DayframeError):
    """Raised when mutating a finalized day commit."""


class RemoteError(DayframeError):
    """A remote store call failed.

    Args:
        message: Human-readable description.
        code: Backend error code (PostgREST / Postgres SQLSTATE), if any.
        status: HTTP status code, if any.
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status = status


class TransientRemoteError(RemoteError):
    """Network, timeout, or auth-expiry failure. Worth retrying."""


class PermanentRemoteError(RemoteError):
    """Malformed payload or constraint violation. Retrying cannot help."""
