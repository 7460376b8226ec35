"""
Tests for the sync engine -- background pushes, drains, sessions, encryption.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest
import yaml

from dayframe.audit import read_audit_log
from dayframe.errors import DecryptionFailed, NotAuthenticated, RemoteError
from dayframe.models import Task, TimeBlock
from dayframe.storage import MemoryStore
from dayframe.sync.engine import SyncEngine, configure_logging, load_config, save_config
from dayframe.sync.models import OperationType, SyncConfig
from dayframe.sync.remote import COMMITS_TABLE, SETTINGS_TABLE, TASKS_TABLE, MemoryRemoteStore

USER = "user-1"
PASSWORD = "correct horse battery staple"


class TestOfflineFirst:
    """Writes land locally at once and reach the remote store eventually."""

    @pytest.mark.asyncio
    async def test_offline_task_synced_after_reconnect(self, engine: SyncEngine, remote):
        engine.set_online(False)
        task = engine.tasks.add_task("buy milk")
        await engine.wait_idle()

        assert engine.tasks.tasks == [task]
        (item,) = engine.queue.items()
        assert item.type is OperationType.TASK_INSERT
        assert remote.rows(TASKS_TABLE) == []

        engine.set_online(True)
        await engine.wait_idle()

        assert len(engine.queue) == 0
        (row,) = remote.rows(TASKS_TABLE)
        assert row["id"] == task.id
        assert row["text"] == "buy milk"

    @pytest.mark.asyncio
    async def test_network_failure_queues_then_drains(self, engine: SyncEngine, remote):
        remote.online = False
        engine.tasks.add_task("call the bank")
        await engine.wait_idle()
        assert engine.queue.items()[0].retry_count == 1

        remote.online = True
        report = await engine.drain()
        assert report.succeeded == 1
        assert len(remote.rows(TASKS_TABLE)) == 1

    @pytest.mark.asyncio
    async def test_online_write_pushes_in_background(self, engine: SyncEngine, remote):
        engine.schedule.commit_day(
            [TimeBlock(identity="Writer", start="09:00", end="11:00")], date="2024-01-05"
        )
        await engine.wait_idle()
        (row,) = remote.rows(COMMITS_TABLE)
        assert row["date"] == "2024-01-05"
        assert row["committed"] is True
        assert len(engine.queue) == 0

    def test_without_event_loop_changes_are_deferred(self, engine: SyncEngine):
        engine.tasks.add_task("written from a script")
        (item,) = engine.queue.items()
        assert item.retry_count == 0
        assert item.last_error == "deferred"

    @pytest.mark.asyncio
    async def test_settings_push_keeps_gemini_key_local(self, engine: SyncEngine, remote):
        engine.settings.update_settings({"theme": "light", "gemini_api_key": "sk-secret"})
        await engine.wait_idle()
        (row,) = remote.rows(SETTINGS_TABLE)
        assert row["theme"] == "light"
        assert "sk-secret" not in str(row)

    @pytest.mark.asyncio
    async def test_ticker_drains_periodically(self, engine: SyncEngine, remote):
        engine.online = False
        engine.tasks.add_task("buy milk")
        await engine.wait_idle()
        engine.online = True

        engine.start()
        try:
            for _ in range(50):
                if not len(engine.queue):
                    break
                await asyncio.sleep(0.05)
        finally:
            await engine.stop()

        assert len(engine.queue) == 0
        assert len(remote.rows(TASKS_TABLE)) == 1
        assert (await engine.status())["ticker_running"] is False


class TestSession:
    """Sign-in, sign-out, and resume."""

    @pytest.mark.asyncio
    async def test_sign_in_merges_and_starts(self, dayframe_home: Path, fast_config: SyncConfig):
        remote = MemoryRemoteStore()
        await remote.upsert(
            TASKS_TABLE,
            {"user_id": USER, "id": "t-phone", "text": "from phone", "encrypted": False},
            ("user_id", "id"),
        )
        engine = SyncEngine(dayframe_home, local=MemoryStore(), remote=remote, config=fast_config)

        report = await engine.sign_in(USER, PASSWORD)
        try:
            assert report.tasks_added == 1
            assert [t.id for t in engine.tasks.tasks] == ["t-phone"]
            assert engine.keycache.get_cached_password(USER) == PASSWORD
            assert (await engine.status())["ticker_running"] is True
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_sign_in_with_unreachable_remote_keeps_local_data(self, engine: SyncEngine, remote):
        engine.tasks.set_tasks([Task(id="t-local", text="laptop")])
        remote.online = False
        report = await engine.sign_in(USER, PASSWORD)
        try:
            assert report is None
            assert [t.id for t in engine.tasks.tasks] == ["t-local"]
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_sign_out_forgets_secrets(self, engine: SyncEngine, dayframe_home: Path):
        await engine.sign_in(USER, PASSWORD)
        await engine.sign_out()

        assert engine.keycache.get_cached_password(USER) is None
        assert await engine.remote.current_user() is None
        status = await engine.status()
        assert status["ticker_running"] is False
        assert status["user_id"] is None
        assert any(e.event_type == "SIGN_OUT" for e in read_audit_log(dayframe_home))

    @pytest.mark.asyncio
    async def test_resume_without_session(self, dayframe_home: Path, fast_config: SyncConfig):
        engine = SyncEngine(
            dayframe_home, local=MemoryStore(), remote=MemoryRemoteStore(), config=fast_config
        )
        assert await engine.resume() is None
        assert (await engine.status())["ticker_running"] is False

    @pytest.mark.asyncio
    async def test_pull_requires_account(self, dayframe_home: Path, fast_config: SyncConfig):
        engine = SyncEngine(
            dayframe_home, local=MemoryStore(), remote=MemoryRemoteStore(), config=fast_config
        )
        with pytest.raises(NotAuthenticated):
            await engine.pull_and_merge()


class TestEncryption:
    """Enabling, locking, and unlocking encryption through the engine."""

    @pytest.mark.asyncio
    async def test_enable_re_pushes_existing_records_encrypted(self, engine: SyncEngine, remote):
        engine.tasks.add_task("plaintext before")
        await engine.wait_idle()
        assert remote.rows(TASKS_TABLE)[0]["encrypted"] is False

        await engine.enable_encryption(PASSWORD)
        await engine.wait_idle()

        (row,) = remote.rows(TASKS_TABLE)
        assert row["encrypted"] is True
        assert row["text"] is None
        assert "plaintext before" not in str(row)

    @pytest.mark.asyncio
    async def test_enable_requires_password(self, engine: SyncEngine):
        with pytest.raises(NotAuthenticated):
            await engine.enable_encryption()

    @pytest.mark.asyncio
    async def test_locked_account_holds_writes_until_unlock(self, engine: SyncEngine, remote):
        await engine.enable_encryption(PASSWORD)
        engine.keycache.clear()

        engine.tasks.add_task("secret plans")
        await engine.wait_idle()
        assert remote.rows(TASKS_TABLE) == []

        report = await engine.drain()
        assert report.skipped_reason == "encryption locked: password required"
        assert engine.queue.items()[0].retry_count == 0

        await engine.unlock(PASSWORD)
        report = await engine.drain()
        assert report.succeeded == 1
        assert remote.rows(TASKS_TABLE)[0]["encrypted"] is True

    @pytest.mark.asyncio
    async def test_unlock_rejects_wrong_password(self, engine: SyncEngine):
        await engine.enable_encryption(PASSWORD)
        engine.tasks.add_task("secret plans")
        await engine.wait_idle()
        engine.keycache.clear()

        with pytest.raises(DecryptionFailed):
            await engine.unlock("not the password")
        assert not engine.keycache.has_cached_password(USER)

    @pytest.mark.asyncio
    async def test_offline_unlock_rejects_wrong_password(self, engine: SyncEngine, remote):
        await engine.enable_encryption(PASSWORD)
        engine.keycache.clear()
        remote.online = False

        with pytest.raises(DecryptionFailed):
            await engine.unlock("a typo")
        assert not engine.keycache.has_cached_password(USER)

        remote.online = True
        engine.tasks.add_task("held back")
        await engine.wait_idle()
        assert remote.rows(TASKS_TABLE) == []

    @pytest.mark.asyncio
    async def test_new_device_unlock_checks_remote_data(
        self, engine: SyncEngine, remote, dayframe_home: Path, fast_config: SyncConfig
    ):
        await engine.enable_encryption(PASSWORD)
        engine.tasks.add_task("from the laptop")
        await engine.wait_idle()

        phone = SyncEngine(
            dayframe_home / "phone", local=MemoryStore(), remote=remote, config=fast_config
        )
        remote.online = False
        with pytest.raises(RemoteError):
            await phone.unlock(PASSWORD)

        remote.online = True
        with pytest.raises(DecryptionFailed):
            await phone.unlock("a typo")
        await phone.unlock(PASSWORD)
        assert [t.text for t in phone.tasks.tasks] == ["from the laptop"]

        # The check value is now local, so offline unlocks are verified too.
        phone.keycache.clear()
        remote.online = False
        with pytest.raises(DecryptionFailed):
            await phone.unlock("a typo")
        await phone.unlock(PASSWORD)
        assert phone.keycache.has_cached_password(USER)

    @pytest.mark.asyncio
    async def test_decrypt_for_user(self, engine: SyncEngine, remote):
        await engine.enable_encryption(PASSWORD)
        engine.tasks.add_task("call mum")
        await engine.wait_idle()

        payload = remote.rows(TASKS_TABLE)[0]["encrypted_text"]
        assert await engine.decrypt_for_user(payload) == "call mum"

        engine.keycache.clear()
        with pytest.raises(NotAuthenticated):
            await engine.decrypt_for_user(payload)


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_fields(self, engine: SyncEngine):
        engine.set_online(False)
        engine.tasks.add_task("a")
        engine.journal.add_entry("dear diary")
        await engine.wait_idle()

        status = await engine.status()
        assert status["user_id"] == USER
        assert status["online"] is False
        assert status["queue_depth"] == 2
        assert status["queue_by_type"] == {"task_insert": 1, "journal_insert": 1}
        assert status["oldest_enqueued_at"] is not None
        assert status["records"] == {"journal_entries": 1, "day_commits": 0, "tasks": 1}
        assert status["encryption_enabled"] is False


class TestConfig:
    def test_defaults_when_missing(self, dayframe_home: Path):
        assert load_config(dayframe_home) == SyncConfig()

    def test_round_trip(self, dayframe_home: Path):
        config = SyncConfig(remote_url="https://project.example.co", queue_capacity=50)
        path = save_config(dayframe_home, config)
        assert path == dayframe_home / "config" / "sync.yaml"
        assert yaml.safe_load(path.read_text())["queue_capacity"] == 50
        assert load_config(dayframe_home) == config

    def test_invalid_yaml_falls_back(self, dayframe_home: Path):
        config_dir = dayframe_home / "config"
        config_dir.mkdir()
        (config_dir / "sync.yaml").write_text("queue_capacity: [not, a, number]\n")
        assert load_config(dayframe_home) == SyncConfig()

    def test_engine_reads_config_from_home(self, dayframe_home: Path):
        save_config(dayframe_home, SyncConfig(queue_capacity=7, pbkdf2_iterations=1_000))
        engine = SyncEngine(dayframe_home, local=MemoryStore(), remote=MemoryRemoteStore())
        assert engine.queue.capacity == 7

    def test_default_remote_unconfigured(self, dayframe_home: Path, monkeypatch):
        monkeypatch.delenv("DAYFRAME_REMOTE_KEY", raising=False)
        engine = SyncEngine(dayframe_home)
        assert engine.remote.configured is False


class TestLogging:
    def test_file_handler_added_once(self, dayframe_home: Path):
        root = logging.getLogger("dayframe")
        before = list(root.handlers)
        try:
            path = configure_logging(dayframe_home)
            configure_logging(dayframe_home)
            added = [h for h in root.handlers if h not in before]
            assert len(added) == 1
            assert path == dayframe_home / "logs" / "sync.log"

            logging.getLogger("dayframe.test").info("hello from the test")
            added[0].flush()
            assert "hello from the test" in path.read_text()
        finally:
            for handler in root.handlers[:]:
                if handler not in before:
                    root.removeHandler(handler)
                    handler.close()
