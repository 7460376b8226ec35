"""
Tests for the key/session cache -- password TTL, key caching, enablement.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from dayframe.audit import read_audit_log
from dayframe.errors import DecryptionFailed, EncryptionNotInitialized, RemoteError
from dayframe.models import Task
from dayframe.storage import MemoryStore
from dayframe.sync import crypto
from dayframe.sync.entities import EntitySync
from dayframe.sync.keycache import KeyCache
from dayframe.sync.models import OperationType
from dayframe.sync.queue import RetryQueue
from dayframe.sync.remote import SETTINGS_TABLE, TASKS_TABLE, MemoryRemoteStore

USER = "user-1"
PASSWORD = "correct horse battery staple"
ITERATIONS = 1_000


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def timed_cache(local: MemoryStore, remote: MemoryRemoteStore, clock: FakeClock) -> KeyCache:
    return KeyCache(local, remote, iterations=ITERATIONS, clock=clock)


class TestPasswordCache:
    """In-memory password slot with lazy inactivity expiry."""

    def test_cache_and_get(self, keycache: KeyCache):
        keycache.cache_password(USER, PASSWORD)
        assert keycache.get_cached_password(USER) == PASSWORD
        assert keycache.has_cached_password(USER)

    def test_other_user_gets_nothing(self, keycache: KeyCache):
        keycache.cache_password(USER, PASSWORD)
        assert keycache.get_cached_password("someone-else") is None

    def test_expires_after_thirty_idle_minutes(self, timed_cache: KeyCache, clock: FakeClock):
        timed_cache.cache_password(USER, PASSWORD)
        clock.advance(30 * 60 + 1)
        assert timed_cache.get_cached_password(USER) is None
        # Stays gone.
        assert timed_cache.get_cached_password(USER) is None

    def test_access_refreshes_idle_timer(self, timed_cache: KeyCache, clock: FakeClock):
        timed_cache.cache_password(USER, PASSWORD)
        clock.advance(25 * 60)
        assert timed_cache.get_cached_password(USER) == PASSWORD
        clock.advance(25 * 60)
        assert timed_cache.get_cached_password(USER) == PASSWORD

    @pytest.mark.asyncio
    async def test_clear_forgets_password_and_keys(self, keycache: KeyCache):
        await keycache.enable_encryption(USER, PASSWORD)
        keycache.clear()
        assert keycache.get_cached_password(USER) is None
        assert await keycache.active_key(USER) is None

    def test_clear_cache_alias(self, keycache: KeyCache):
        keycache.cache_password(USER, PASSWORD)
        keycache.clear_cache()
        assert not keycache.has_cached_password(USER)

    def test_has_cached_password_does_not_refresh(self, timed_cache: KeyCache, clock: FakeClock):
        timed_cache.cache_password(USER, PASSWORD)
        clock.advance(25 * 60)
        assert timed_cache.has_cached_password(USER)
        clock.advance(6 * 60)
        assert not timed_cache.has_cached_password(USER)
        assert timed_cache.get_cached_password(USER) is None

    @pytest.mark.asyncio
    async def test_background_drains_do_not_keep_password_alive(
        self,
        timed_cache: KeyCache,
        clock: FakeClock,
        remote: MemoryRemoteStore,
        queue: RetryQueue,
    ):
        await timed_cache.enable_encryption(USER, PASSWORD)
        sync = EntitySync(timed_cache, remote, queue)
        queue.enqueue(
            OperationType.TASK_INSERT, Task(id="t1", text="x").model_dump(mode="json"), failed=False
        )

        # One drain tick every 30 seconds for 31 idle minutes.
        for _ in range(62):
            clock.advance(30)
            await queue.drain(sync.replay, ready=sync.blocked_reason)

        assert len(remote.rows(TASKS_TABLE)) == 1
        assert timed_cache.get_cached_password(USER) is None
        assert await sync.blocked_reason() == "encryption locked: password required"


class TestKeys:
    """Key derivation and caching."""

    @pytest.mark.asyncio
    async def test_missing_salt_raises(self, keycache: KeyCache):
        with pytest.raises(EncryptionNotInitialized):
            await keycache.get_encryption_key(USER, PASSWORD)

    @pytest.mark.asyncio
    async def test_key_derived_once(self, keycache: KeyCache, monkeypatch):
        await keycache.enable_encryption(USER, PASSWORD)
        calls = []
        real = crypto.derive_key

        async def counting(password, salt, iterations=crypto.PBKDF2_ITERATIONS):
            calls.append(1)
            return await real(password, salt, iterations)

        monkeypatch.setattr(crypto, "derive_key", counting)
        k1 = await keycache.get_encryption_key(USER, PASSWORD)
        k2 = await keycache.get_encryption_key(USER, PASSWORD)
        assert k1 == k2
        assert calls == []

    @pytest.mark.asyncio
    async def test_different_password_different_key(self, keycache: KeyCache):
        await keycache.enable_encryption(USER, PASSWORD)
        right = await keycache.get_encryption_key(USER, PASSWORD)
        wrong = await keycache.get_encryption_key(USER, "not it")
        assert right != wrong

    @pytest.mark.asyncio
    async def test_active_key_requires_password_and_enablement(self, keycache: KeyCache):
        keycache.cache_password(USER, PASSWORD)
        assert await keycache.active_key(USER) is None

        await keycache.enable_encryption(USER, PASSWORD)
        assert isinstance(await keycache.active_key(USER), bytes)

        keycache.clear()
        assert await keycache.active_key(USER) is None


class TestEnableEncryption:
    """Salt creation, reuse, and persistence."""

    @pytest.mark.asyncio
    async def test_persists_salt_locally_and_remotely(
        self, keycache: KeyCache, local: MemoryStore, remote: MemoryRemoteStore
    ):
        salt = await keycache.enable_encryption(USER, PASSWORD)

        assert len(crypto.b64_to_salt(salt)) == 16
        assert keycache.local_salt(USER) == salt
        assert keycache.is_encryption_enabled_locally(USER)

        (row,) = remote.rows(SETTINGS_TABLE)
        assert row["encryption_salt"] == salt
        assert row["encryption_enabled"] is True
        assert row["encryption_version"] == 1

    @pytest.mark.asyncio
    async def test_never_persists_password_or_key(
        self, keycache: KeyCache, local: MemoryStore, remote: MemoryRemoteStore
    ):
        await keycache.enable_encryption(USER, PASSWORD)
        key = await keycache.get_encryption_key(USER, PASSWORD)

        everything = json.dumps([local.get(k) for k in local.keys()]) + json.dumps(
            remote.rows(SETTINGS_TABLE)
        )
        assert PASSWORD not in everything
        assert crypto.salt_to_b64(key) not in everything

    @pytest.mark.asyncio
    async def test_idempotent(self, keycache: KeyCache):
        first = await keycache.enable_encryption(USER, PASSWORD)
        second = await keycache.enable_encryption(USER, PASSWORD)
        assert first == second

    @pytest.mark.asyncio
    async def test_new_device_reuses_remote_salt(
        self, keycache: KeyCache, remote: MemoryRemoteStore
    ):
        salt = await keycache.enable_encryption(USER, PASSWORD)

        other_device = KeyCache(MemoryStore(), remote, iterations=ITERATIONS)
        assert await other_device.enable_encryption(USER, PASSWORD) == salt
        assert await other_device.get_encryption_key(
            USER, PASSWORD
        ) == await keycache.get_encryption_key(USER, PASSWORD)

    @pytest.mark.asyncio
    async def test_unreachable_remote_without_local_salt_raises(
        self, keycache: KeyCache, remote: MemoryRemoteStore
    ):
        remote.online = False
        with pytest.raises(RemoteError):
            await keycache.enable_encryption(USER, PASSWORD)
        assert keycache.local_salt(USER) is None

    @pytest.mark.asyncio
    async def test_remote_write_failure_keeps_local_salt(
        self, keycache: KeyCache, remote: MemoryRemoteStore
    ):
        salt = await keycache.enable_encryption(USER, PASSWORD)
        remote.online = False
        assert await keycache.enable_encryption(USER, PASSWORD) == salt
        assert keycache.local_salt(USER) == salt

    @pytest.mark.asyncio
    async def test_audited(self, keycache: KeyCache, dayframe_home: Path):
        await keycache.enable_encryption(USER, PASSWORD)
        keycache.disable_encryption(USER)
        events = [e.event_type for e in read_audit_log(dayframe_home)]
        assert events == ["ENCRYPTION_ENABLE", "ENCRYPTION_DISABLE"]

    @pytest.mark.asyncio
    async def test_disable_removes_local_state(self, keycache: KeyCache):
        await keycache.enable_encryption(USER, PASSWORD)
        keycache.disable_encryption(USER)
        assert keycache.local_salt(USER) is None
        assert not keycache.is_encryption_enabled_locally(USER)
        assert not keycache.has_cached_password(USER)


class TestVerifyPassword:
    """Local check value written when encryption is first enabled."""

    @pytest.mark.asyncio
    async def test_right_and_wrong_password(self, keycache: KeyCache):
        await keycache.enable_encryption(USER, PASSWORD)
        assert await keycache.verify_password(USER, PASSWORD) is True
        with pytest.raises(DecryptionFailed):
            await keycache.verify_password(USER, "not it")

    @pytest.mark.asyncio
    async def test_unknown_without_check_value(self, keycache: KeyCache, remote: MemoryRemoteStore):
        await keycache.enable_encryption(USER, PASSWORD)
        other_device = KeyCache(MemoryStore(), remote, iterations=ITERATIONS)
        assert await other_device.verify_password(USER, "anything") is None

    @pytest.mark.asyncio
    async def test_re_enable_with_wrong_password_refused(
        self, keycache: KeyCache, remote: MemoryRemoteStore
    ):
        await keycache.enable_encryption(USER, PASSWORD)
        keycache.clear()
        remote.online = False
        with pytest.raises(DecryptionFailed):
            await keycache.enable_encryption(USER, "not it")
        assert not keycache.has_cached_password(USER)

    @pytest.mark.asyncio
    async def test_disable_forgets_check_value(self, keycache: KeyCache):
        await keycache.enable_encryption(USER, PASSWORD)
        keycache.disable_encryption(USER)
        assert await keycache.verify_password(USER, "new password") is None


class TestIsEncryptionEnabled:
    """Local flag first, then a one-time remote check."""

    @pytest.mark.asyncio
    async def test_false_for_fresh_account(self, keycache: KeyCache):
        assert await keycache.is_encryption_enabled(USER) is False

    @pytest.mark.asyncio
    async def test_remote_checked_once(self, keycache: KeyCache, remote: MemoryRemoteStore):
        await keycache.is_encryption_enabled(USER)
        await keycache.is_encryption_enabled(USER)
        assert remote.calls.count(("select", SETTINGS_TABLE)) == 1

    @pytest.mark.asyncio
    async def test_remote_answer_cached_locally(self, keycache: KeyCache, remote: MemoryRemoteStore):
        salt = await keycache.enable_encryption(USER, PASSWORD)

        fresh_local = MemoryStore()
        other_device = KeyCache(fresh_local, remote, iterations=ITERATIONS)
        assert await other_device.is_encryption_enabled(USER) is True
        assert other_device.local_salt(USER) == salt

        remote.online = False
        assert await other_device.is_encryption_enabled(USER) is True

    @pytest.mark.asyncio
    async def test_remote_failure_retried_later(self, keycache: KeyCache, remote: MemoryRemoteStore):
        await keycache.enable_encryption(USER, PASSWORD)
        other_device = KeyCache(MemoryStore(), remote, iterations=ITERATIONS)

        remote.online = False
        assert await other_device.is_encryption_enabled(USER) is False
        remote.online = True
        assert await other_device.is_encryption_enabled(USER) is True
