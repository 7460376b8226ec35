"""
Sync engine -- wires the containers to the remote store and keeps them in step.

Data flow:

    container mutation  (sync, returns immediately)
        -> dispatch()   schedules a tracked background push
        -> EntitySync   encrypt, upsert/delete, classify failures
        -> RetryQueue   transient failures wait here
    ticker (every drain_interval_seconds) / reconnect
        -> drain()      replay the queue when online and signed in
    sign_in() / resume()
        -> pull_and_merge()  one snapshot, merged into every container

Storage layout:
    ~/.dayframe/
    ├── config/sync.yaml     SyncConfig
    ├── data/                LocalStore blobs (records, queue, salts)
    ├── logs/sync.log
    └── security/audit.log
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Coroutine, Optional

import yaml

from ..audit import audit_event
from ..errors import DecryptionFailed, NotAuthenticated, RemoteError
from ..storage import JsonFileStore, LocalStore
from ..stores import JournalStore, ScheduleStore, SettingsStore, TaskStore
from . import crypto
from .entities import EntitySync
from .keycache import KeyCache
from .models import DrainReport, MergeReport, SyncConfig
from .queue import RetryQueue
from .reconcile import Reconciler
from .remote import COMMITS_TABLE, JOURNAL_TABLE, TASKS_TABLE, PostgrestRemoteStore, RemoteStore

logger = logging.getLogger("dayframe.sync.engine")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def configure_logging(home: Path, level: int = logging.INFO) -> Path:
    """Send dayframe logs to ``<home>/logs/sync.log``.

    Returns:
        Path: The log file.
    """
    log_dir = Path(home).expanduser() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "sync.log"

    root = logging.getLogger("dayframe")
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == log_file:
            return log_file
    handler = logging.FileHandler(log_file)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)
    return log_file


def load_config(home: Path) -> SyncConfig:
    """Read ``<home>/config/sync.yaml``, falling back to defaults."""
    config_file = Path(home).expanduser() / "config" / "sync.yaml"
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text()) or {}
            return SyncConfig(**data)
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            logger.warning("Failed to load sync config: %s", exc)
    return SyncConfig()


def save_config(home: Path, config: SyncConfig) -> Path:
    config_dir = Path(home).expanduser() / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    config_file = config_dir / "sync.yaml"
    config_file.write_text(yaml.dump(config.model_dump(mode="json"), default_flow_style=False))
    return config_file


class SyncEngine:
    """Orchestrates local containers, background pushes, and the drain ticker.

    Args:
        home: Dayframe home directory.
        local: Local store. Defaults to JSON files under ``<home>/data``.
        remote: Remote store. Defaults to a PostgREST store from config.
        config: Sync configuration. Defaults to ``<home>/config/sync.yaml``.
    """

    def __init__(
        self,
        home: Path,
        local: Optional[LocalStore] = None,
        remote: Optional[RemoteStore] = None,
        config: Optional[SyncConfig] = None,
    ) -> None:
        self.home = Path(home).expanduser()
        self.config = config or load_config(self.home)
        self.local = local or JsonFileStore(
            self.home / "data", quota_bytes=self.config.storage_quota_bytes
        )
        self.remote = remote or PostgrestRemoteStore(
            self.config.remote_url,
            timeout=self.config.remote_timeout_seconds,
            key_env=self.config.remote_key_env,
        )
        self.online = True

        self.keycache = KeyCache(
            self.local,
            self.remote,
            home=self.home,
            password_ttl=self.config.password_ttl_minutes * 60,
            iterations=self.config.pbkdf2_iterations,
        )
        self.queue = RetryQueue(
            self.local,
            capacity=self.config.queue_capacity,
            max_retries=self.config.max_retries,
            max_age=timedelta(days=self.config.max_age_days),
            base_backoff=self.config.base_backoff_seconds,
            max_backoff=self.config.max_backoff_seconds,
            home=self.home,
        )
        self.entities = EntitySync(
            self.keycache, self.remote, self.queue, online=lambda: self.online
        )

        self.journal = JournalStore(self.local, self.dispatch)
        self.schedule = ScheduleStore(self.local, self.dispatch)
        self.tasks = TaskStore(self.local, self.dispatch)
        self.settings = SettingsStore(self.local, self.dispatch)
        self.reconciler = Reconciler(
            self.entities,
            self.journal,
            self.schedule,
            self.tasks,
            self.settings,
            home=self.home,
        )

        self._background: set[asyncio.Task] = set()
        self._ticker: Optional[asyncio.Task] = None

    def save_config(self) -> Path:
        return save_config(self.home, self.config)

    # -- background work --------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed: %s", task.get_name(), exc, exc_info=exc
            )

    def dispatch(self, entity: str, record: Any, action: str) -> None:
        """Schedule a background push for a container change.

        Called synchronously by the containers. Without a running event
        loop the change is queued and goes out on the next drain.
        """
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self.entities.defer(entity, record, action)
            return

        if entity == "journal":
            coro = self.entities.push_journal_entry(record, action)
        elif entity == "task":
            coro = self.entities.push_task(record, action)
        elif entity == "schedule":
            coro = self.entities.push_day_commit(record, action)
        else:
            coro = self.entities.push_settings(record)
        self._spawn(coro, name=f"push-{entity}-{action}")

    async def wait_idle(self) -> None:
        """Wait until every outstanding background push has finished."""
        while True:
            pending = [t for t in self._background if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # -- queue ------------------------------------------------------------

    async def drain(self, force: bool = False) -> DrainReport:
        """Replay the retry queue if online and signed in."""
        return await self.queue.drain(
            self.entities.replay, ready=self.entities.blocked_reason, force=force
        )

    async def _tick(self) -> None:
        interval = self.config.drain_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.drain()
            except Exception as exc:
                logger.error("Queue drain failed: %s", exc, exc_info=exc)

    def start(self) -> None:
        """Start the periodic drain ticker. Requires a running event loop."""
        if self._ticker is not None and not self._ticker.done():
            return
        self._ticker = asyncio.get_running_loop().create_task(self._tick(), name="drain-ticker")
        logger.info(
            "Background sync started (every %ss)", self.config.drain_interval_seconds
        )

    async def stop(self) -> None:
        if self._ticker is None:
            return
        self._ticker.cancel()
        try:
            await self._ticker
        except asyncio.CancelledError:
            pass
        self._ticker = None
        logger.info("Background sync stopped")

    def set_online(self, online: bool) -> None:
        """Record connectivity. Coming back online triggers one eager drain."""
        was_online, self.online = self.online, online
        if online and not was_online:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                return
            logger.info("Connectivity restored, draining sync queue")
            self._spawn(self.drain(), name="drain-reconnect")

    # -- session ----------------------------------------------------------

    async def pull_and_merge(self) -> MergeReport:
        return await self.reconciler.pull_and_merge()

    async def sign_in(
        self, user_id: str, password: str, access_token: Optional[str] = None
    ) -> Optional[MergeReport]:
        """Adopt a freshly authenticated session, merge, and start syncing.

        Returns:
            The merge report, or None if the remote store was unreachable
            (local data stays usable and the ticker retries later).
        """
        self.remote.set_session(user_id, access_token)
        self.keycache.cache_password(user_id, password)
        report = await self._merge_quietly()
        self.start()
        return report

    async def resume(self) -> Optional[MergeReport]:
        """Pick up a persisted session on process start, if there is one."""
        if await self.remote.current_user() is None:
            logger.info("No session to resume")
            return None
        report = await self._merge_quietly()
        self.start()
        return report

    async def _merge_quietly(self) -> Optional[MergeReport]:
        try:
            return await self.pull_and_merge()
        except RemoteError as exc:
            logger.warning("Pull on sign-in failed, continuing with local data: %s", exc)
            return None

    async def sign_out(self) -> None:
        """Stop syncing and forget every secret held in memory."""
        user_id = await self.remote.current_user()
        await self.stop()
        self.keycache.clear()
        self.remote.set_session(None, None)
        audit_event(self.home, "SIGN_OUT", "Signed out", metadata={"user_id": user_id})

    async def _require_user(self) -> str:
        user_id = await self.remote.current_user()
        if user_id is None:
            raise NotAuthenticated("No account is signed in")
        return user_id

    # -- encryption -------------------------------------------------------

    async def enable_encryption(self, password: Optional[str] = None) -> str:
        """Turn on encryption for the active account and re-push its records.

        Re-pushing replaces any plaintext copies already on the remote
        store with ciphertext.

        Raises:
            NotAuthenticated: No account, or no password given or cached.
            DecryptionFailed: The password does not open the account's
                existing data.
            RemoteError: The password could not be checked.
        """
        user_id = await self._require_user()
        password = password or self.keycache.get_cached_password(user_id)
        if password is None:
            raise NotAuthenticated("Enabling encryption requires the account password")
        salt = await self.keycache.enable_encryption(user_id, password)
        try:
            await self._check_password(user_id, password)
        except (DecryptionFailed, RemoteError):
            self.keycache.clear()
            raise
        self.push_all()
        return salt

    def push_all(self) -> None:
        """Schedule a push of every local record."""
        for entry in self.journal.entries:
            self.dispatch("journal", entry, "update")
        for commit in self.schedule.commits:
            self.dispatch("schedule", commit, "commit")
        for task in self.tasks.tasks:
            self.dispatch("task", task, "update")

    async def decrypt_for_user(self, payload: str) -> str:
        """Decrypt one payload on explicit user request.

        Raises:
            NotAuthenticated: No account or no cached password.
            DecryptionFailed: The payload does not open with this key.
        """
        user_id = await self._require_user()
        password = self.keycache.get_cached_password(user_id)
        if password is None:
            raise NotAuthenticated("Password required to decrypt")
        key = await self.keycache.get_encryption_key(user_id, password)
        return await crypto.decrypt(payload, key)

    async def unlock(self, password: str) -> Optional[MergeReport]:
        """Check a password, cache it, and re-merge.

        Records pulled while locked are refreshed with readable copies.

        Raises:
            NotAuthenticated: No account is signed in.
            DecryptionFailed: The password does not open the account's data.
            RemoteError: This device has never checked a password and the
                remote store could not be read to check this one.
        """
        user_id = await self._require_user()
        await self._check_password(user_id, password)
        self.keycache.cache_password(user_id, password)
        return await self._merge_quietly()

    async def _check_password(self, user_id: str, password: str) -> None:
        """Verify a password before anything is encrypted under it.

        The local check value is used when this device has one. Otherwise
        the password must open one of the account's encrypted rows, and
        the result is remembered locally. An account with no encrypted
        rows yet accepts the password as its first.
        """
        if await self.keycache.verify_password(user_id, password):
            return
        key = await self.keycache.get_encryption_key(user_id, password)
        sample = await self._encrypted_sample(user_id) if self.remote.configured else None
        if sample is not None:
            await crypto.decrypt(sample, key)
        self.keycache.remember_key(user_id, key)

    async def _encrypted_sample(self, user_id: str) -> Optional[str]:
        for row in await self.remote.select(TASKS_TABLE, user_id):
            if row.get("encrypted") and row.get("encrypted_text"):
                return row["encrypted_text"]
        for row in await self.remote.select(COMMITS_TABLE, user_id):
            if row.get("encrypted") and row.get("encrypted_blocks"):
                return row["encrypted_blocks"]
        for row in await self.remote.select(JOURNAL_TABLE, user_id):
            if row.get("encrypted") and row.get("encrypted_content"):
                try:
                    return json.loads(row["encrypted_content"])["content"]
                except (ValueError, KeyError, TypeError):
                    continue
        return None

    # -- introspection ----------------------------------------------------

    async def status(self) -> dict[str, Any]:
        """Snapshot of the sync layer for display."""
        user_id = await self.remote.current_user()
        items = self.queue.items()
        by_type: dict[str, int] = {}
        for item in items:
            by_type[item.type.value] = by_type.get(item.type.value, 0) + 1
        return {
            "home": str(self.home),
            "user_id": user_id,
            "online": self.online,
            "remote_configured": self.remote.configured,
            "remote_url": self.config.remote_url,
            "encryption_enabled": (
                self.keycache.is_encryption_enabled_locally(user_id) if user_id else False
            ),
            "password_cached": (
                self.keycache.has_cached_password(user_id) if user_id else False
            ),
            "queue_depth": len(items),
            "queue_by_type": by_type,
            "oldest_enqueued_at": (
                min(i.enqueued_at for i in items).isoformat() if items else None
            ),
            "ticker_running": self._ticker is not None and not self._ticker.done(),
            "background_tasks": len(self._background),
            "records": {
                "journal_entries": len(self.journal.entries),
                "day_commits": len(self.schedule.commits),
                "tasks": len(self.tasks.tasks),
            },
        }

    async def close(self) -> None:
        await self.stop()
        await self.wait_idle()
        await self.remote.close()
