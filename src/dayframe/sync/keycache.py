"""
Key/session cache -- the one piece of ambient secret state.

Holds the active account's password and derived key in process memory
so that every field touch does not pay for a 100k-round PBKDF2. Neither
ever reaches the local store or the remote store; only the salt does.

Lifecycle:
    sign-in   -> cache_password()
    first use -> get_encryption_key() derives once, then reuses
    idle 30m  -> password forgotten on next access
    unlock    -> verify_password() against the local check value
    sign-out  -> clear()
"""

from __future__ import annotations

import hashlib
import logging
import time
from pathlib import Path
from typing import Callable, Optional

from ..audit import audit_event
from ..errors import DecryptionFailed, EncryptionNotInitialized, RemoteError
from ..storage import LocalStore
from . import crypto
from .remote import SETTINGS_TABLE, RemoteStore

logger = logging.getLogger("dayframe.sync.keycache")

SALT_KEY = "encryption_salt"
ENABLED_KEY = "encryption_enabled"
VERIFIER_KEY = "encryption_check"
VERIFIER_TEXT = "dayframe-check"
PASSWORD_TTL_SECONDS = 30 * 60


class KeyCache:
    """In-memory password and key cache plus encryption enablement.

    Args:
        local: Device-local persistent store (salt and enabled flag).
        remote: Remote store (salt mirror for multi-device accounts).
        home: Dayframe home for audit events. None disables auditing.
        password_ttl: Seconds of inactivity before the password expires.
        iterations: PBKDF2 rounds for key derivation.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStore,
        home: Optional[Path] = None,
        password_ttl: float = PASSWORD_TTL_SECONDS,
        iterations: int = crypto.PBKDF2_ITERATIONS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._local = local
        self._remote = remote
        self._home = home
        self._ttl = password_ttl
        self._iterations = iterations
        self._clock = clock

        self._password: Optional[tuple[str, str, float]] = None
        self._keys: dict[tuple[str, str], bytes] = {}
        self._remote_checked: set[str] = set()

    # -- password ---------------------------------------------------------

    def cache_password(self, user_id: str, password: str) -> None:
        self._password = (user_id, password, self._clock())

    def get_cached_password(self, user_id: str, touch: bool = True) -> Optional[str]:
        """Return the cached password.

        Expiry is checked lazily here; there is no timer. Only user-driven
        access should pass ``touch=True`` and refresh the idle timer;
        background readiness checks peek without it.
        """
        if self._password is None or self._password[0] != user_id:
            return None
        _, password, touched = self._password
        if self._clock() - touched > self._ttl:
            logger.info("Cached password expired after inactivity")
            self._password = None
            return None
        if touch:
            self._password = (user_id, password, self._clock())
        return password

    def has_cached_password(self, user_id: str) -> bool:
        """Whether a live password is cached. Does not refresh the idle timer."""
        return self.get_cached_password(user_id, touch=False) is not None

    def clear(self) -> None:
        """Forget the password and every derived key."""
        self._password = None
        self._keys.clear()
        self._remote_checked.clear()

    clear_cache = clear

    # -- keys -------------------------------------------------------------

    def _salt_key(self, user_id: str) -> str:
        return f"{SALT_KEY}_{user_id}"

    def _enabled_key(self, user_id: str) -> str:
        return f"{ENABLED_KEY}_{user_id}"

    def local_salt(self, user_id: str) -> Optional[str]:
        return self._local.get(self._salt_key(user_id))

    def _verifier_key(self, user_id: str) -> str:
        return f"{VERIFIER_KEY}_{user_id}"

    def remember_key(self, user_id: str, key: bytes) -> None:
        """Store a check value encrypted under a key known to be right."""
        self._local.set(self._verifier_key(user_id), crypto.encrypt_sync(VERIFIER_TEXT, key))

    async def verify_password(self, user_id: str, password: str) -> Optional[bool]:
        """Check a password against this device's check value.

        Returns:
            True when it matches, None when no check value exists yet.

        Raises:
            DecryptionFailed: The password derives a different key.
        """
        check = self._local.get(self._verifier_key(user_id))
        if not check:
            return None
        key = await self.get_encryption_key(user_id, password)
        if await crypto.decrypt(check, key) != VERIFIER_TEXT:
            raise DecryptionFailed("Password does not match this account's key")
        return True

    async def get_encryption_key(self, user_id: str, password: str) -> bytes:
        """Derive (once) and return the account key.

        Raises:
            EncryptionNotInitialized: No salt exists locally or remotely.
        """
        salt_b64 = self.local_salt(user_id)
        if not salt_b64:
            salt_b64 = await self._load_remote_salt(user_id)
        if not salt_b64:
            raise EncryptionNotInitialized(
                "Encryption not initialized for this account"
            )

        slot = (user_id, hashlib.sha256((salt_b64 + password).encode("utf-8")).hexdigest())
        key = self._keys.get(slot)
        if key is None:
            key = await crypto.derive_key(
                password, crypto.b64_to_salt(salt_b64), self._iterations
            )
            self._keys = {slot: key}
        return key

    async def active_key(self, user_id: str, touch: bool = True) -> Optional[bytes]:
        """Key for the cached password, or None when locked or disabled."""
        password = self.get_cached_password(user_id, touch=touch)
        if password is None:
            return None
        if not await self.is_encryption_enabled(user_id):
            return None
        return await self.get_encryption_key(user_id, password)

    # -- enablement -------------------------------------------------------

    def is_encryption_enabled_locally(self, user_id: str) -> bool:
        return self._local.get(self._enabled_key(user_id)) is True

    async def is_encryption_enabled(self, user_id: str) -> bool:
        """Local flag first, then a one-time remote check.

        A positive remote answer is cached locally along with the salt so
        a fresh device can decrypt what another device wrote.
        """
        if self.is_encryption_enabled_locally(user_id):
            return True
        if user_id in self._remote_checked or not self._remote.configured:
            return False
        self._remote_checked.add(user_id)
        try:
            return await self._load_remote_salt(user_id) is not None
        except RemoteError as exc:
            logger.warning("Could not check remote encryption status: %s", exc)
            self._remote_checked.discard(user_id)
            return False

    async def _load_remote_salt(self, user_id: str) -> Optional[str]:
        if not self._remote.configured:
            return None
        row = await self._remote.select_one(SETTINGS_TABLE, user_id)
        if not row or not row.get("encryption_enabled") or not row.get("encryption_salt"):
            return None
        salt_b64 = row["encryption_salt"]
        self._local.set(self._salt_key(user_id), salt_b64)
        self._local.set(self._enabled_key(user_id), True)
        logger.info("Loaded encryption salt from remote store")
        return salt_b64

    async def enable_encryption(self, user_id: str, password: str) -> str:
        """Turn on encryption for an account. Idempotent.

        An existing salt (local first, then remote) is always reused;
        a new one is generated only when the account has none anywhere,
        so previously encrypted records are never orphaned.

        Returns:
            The base64 salt in use.

        Raises:
            RemoteError: The remote store is configured but unreachable
                and no local salt exists. Generating one blind could fork
                the account's key.
            DecryptionFailed: The password does not match the check value
                stored when encryption was first enabled on this device.
        """
        salt_b64 = self.local_salt(user_id)
        if not salt_b64 and self._remote.configured:
            salt_b64 = await self._load_remote_salt(user_id)
        created = salt_b64 is None
        if created:
            salt_b64 = crypto.salt_to_b64(crypto.generate_salt())
        else:
            await self.verify_password(user_id, password)

        self._local.set(self._salt_key(user_id), salt_b64)
        self._local.set(self._enabled_key(user_id), True)
        self.cache_password(user_id, password)
        key = await self.get_encryption_key(user_id, password)
        if created:
            self.remember_key(user_id, key)

        if self._remote.configured:
            try:
                await self._remote.upsert(
                    SETTINGS_TABLE,
                    {
                        "user_id": user_id,
                        "encryption_salt": salt_b64,
                        "encryption_enabled": True,
                        "encryption_version": crypto.ENCRYPTION_VERSION,
                    },
                    on_conflict=("user_id",),
                )
            except RemoteError as exc:
                logger.error("Failed to store encryption salt remotely: %s", exc)

        if self._home is not None:
            audit_event(
                self._home,
                "ENCRYPTION_ENABLE",
                "Encryption enabled" + (" (new salt)" if created else " (existing salt)"),
                metadata={"user_id": user_id},
            )
        return salt_b64

    def disable_encryption(self, user_id: str) -> None:
        """Forget the local salt and flag.

        Records already encrypted stay unreadable until the salt is
        recovered from the remote store.
        """
        self._local.remove(self._salt_key(user_id))
        self._local.remove(self._enabled_key(user_id))
        self._local.remove(self._verifier_key(user_id))
        self.clear()
        if self._home is not None:
            audit_event(
                self._home,
                "ENCRYPTION_DISABLE",
                "Encryption disabled locally",
                metadata={"user_id": user_id},
            )
