"""
Entity sync -- push and pull for each record kind.

Push: resolve the account, encrypt when the account has encryption on,
write to the remote store, and classify any failure.

    transient failure  -> enqueue, return QUEUED ("saved locally")
    permanent failure  -> log, return DROPPED (retrying cannot help)
    blocked            -> enqueue without spending a retry
                          (offline, signed out, remote not configured,
                           encrypted account with no cached password)

Pull: select every row for the account and decode it. Rows that cannot
be decrypted come back with empty sensitive fields and a DecryptState;
a single bad row never aborts the pull.

Pushes and queue replays for the same record run one at a time.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from pydantic import ValidationError

from ..errors import NotAuthenticated, TransientRemoteError
from ..models import DayCommit, JournalEntry, Task, UserSettings
from . import envelope
from .keycache import KeyCache
from .models import OperationType, QueueItem, RemoteSnapshot, SyncOutcome, record_key_for
from .queue import RetryQueue
from .remote import (
    COMMITS_TABLE,
    CONFLICT_KEYS,
    JOURNAL_TABLE,
    SETTINGS_TABLE,
    TASKS_TABLE,
    ErrorKind,
    RemoteStore,
    classify_error,
)

logger = logging.getLogger("dayframe.sync.entities")

Writer = Callable[[str, Optional[bytes]], Awaitable[None]]

_JOURNAL_OPS = {
    "insert": OperationType.JOURNAL_INSERT,
    "update": OperationType.JOURNAL_UPDATE,
    "delete": OperationType.JOURNAL_DELETE,
}
_TASK_OPS = {
    "insert": OperationType.TASK_INSERT,
    "update": OperationType.TASK_UPDATE,
    "delete": OperationType.TASK_DELETE,
}
_COMMIT_OPS = {
    "commit": OperationType.SCHEDULE_COMMIT,
    "delete": OperationType.SCHEDULE_DELETE,
}


_OPS = {"journal": _JOURNAL_OPS, "task": _TASK_OPS, "schedule": _COMMIT_OPS}


def _action(op_type: OperationType) -> str:
    return op_type.value.split("_", 1)[1]


def operation_for(entity: str, record: Any, action: str) -> tuple[OperationType, dict[str, Any]]:
    """Queue operation type and payload for a record change.

    Deletes carry only the record key. Settings never carry the Gemini key.
    """
    if entity == "settings":
        return (
            OperationType.SETTINGS_UPDATE,
            record.model_dump(mode="json", exclude={"gemini_api_key"}),
        )
    op_type = _OPS[entity][action]
    if action == "delete":
        key_field = "date" if entity == "schedule" else "id"
        return op_type, {key_field: getattr(record, key_field)}
    return op_type, record.model_dump(mode="json")


class EntitySync:
    """Push/pull functions for journal entries, day commits, tasks, settings.

    Args:
        keycache: Password/key cache for the active account.
        remote: Remote store.
        queue: Retry queue for writes that could not be delivered.
        online: Returns the current connectivity state.
    """

    def __init__(
        self,
        keycache: KeyCache,
        remote: RemoteStore,
        queue: RetryQueue,
        online: Callable[[], bool] = lambda: True,
    ) -> None:
        self.keycache = keycache
        self.remote = remote
        self.queue = queue
        self._online = online
        # (entity, record key) -> (lock, pushes holding or awaiting it)
        self._locks: dict[tuple[str, str], tuple[asyncio.Lock, int]] = {}

    # -- readiness --------------------------------------------------------

    async def blocked_reason(self) -> Optional[str]:
        """Why remote writes cannot happen right now, or None."""
        if not self.remote.configured:
            return "remote store not configured"
        if not self._online():
            return "offline"
        user_id = await self.remote.current_user()
        if user_id is None:
            return "signed out"
        if await self.keycache.is_encryption_enabled(user_id) and not (
            self.keycache.has_cached_password(user_id)
        ):
            return "encryption locked: password required"
        return None

    @asynccontextmanager
    async def _record_lock(self, entity: str, record_key: str) -> AsyncIterator[None]:
        """Serialize pushes for one record; the lock is dropped once unused."""
        slot = (entity, record_key)
        lock, users = self._locks.get(slot, (asyncio.Lock(), 0))
        self._locks[slot] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[slot]
            if users == 1:
                del self._locks[slot]
            else:
                self._locks[slot] = (lock, users - 1)

    def pending_locks(self) -> int:
        """Records with a push in flight or waiting."""
        return len(self._locks)

    # -- push core --------------------------------------------------------

    async def _push(
        self,
        op_type: OperationType,
        payload: dict[str, Any],
        write: Writer,
        replaying: bool = False,
    ) -> SyncOutcome:
        record_key = record_key_for(op_type, payload)
        async with self._record_lock(op_type.entity, record_key):
            reason = await self.blocked_reason()
            if reason:
                if replaying:
                    raise TransientRemoteError(reason)
                self.queue.enqueue(op_type, payload, error=reason, failed=False)
                logger.info(
                    "Saved %s for %s locally, will sync later (%s)",
                    op_type.value,
                    record_key,
                    reason,
                )
                return SyncOutcome.QUEUED

            user_id = await self.remote.current_user()
            try:
                # Replays run on the ticker and must not keep the password alive.
                key = await self.keycache.active_key(user_id, touch=not replaying)
                await write(user_id, key)
            except Exception as exc:
                if classify_error(exc) is ErrorKind.PERMANENT:
                    logger.error(
                        "Dropping %s for %s, remote rejected it: %s",
                        op_type.value,
                        record_key,
                        exc,
                    )
                    return SyncOutcome.DROPPED
                if replaying:
                    raise
                self.queue.enqueue(op_type, payload, error=str(exc))
                logger.warning(
                    "Saved %s for %s locally, will sync later: %s",
                    op_type.value,
                    record_key,
                    exc,
                )
                return SyncOutcome.QUEUED

            if not replaying:
                # Older queued writes for this record are now stale.
                self.queue.discard_record(op_type.entity, record_key)
            logger.debug("Synced %s for %s", op_type.value, record_key)
            return SyncOutcome.SYNCED

    def defer(self, entity: str, record: Any, action: str) -> None:
        """Queue a change without attempting it (no event loop to push on)."""
        op_type, payload = operation_for(entity, record, action)
        self.queue.enqueue(op_type, payload, error="deferred", failed=False)

    def _refuse_unreadable(self, what: str, record_key: str) -> SyncOutcome:
        logger.warning(
            "Not pushing %s %s: its content could not be decrypted locally", what, record_key
        )
        return SyncOutcome.DROPPED

    # -- journal ----------------------------------------------------------

    async def push_journal_entry(
        self, entry: JournalEntry, action: str = "update", replaying: bool = False
    ) -> SyncOutcome:
        """Upsert or delete one journal entry remotely.

        Args:
            entry: The entry (only ``id`` matters for deletes).
            action: ``insert``, ``update`` or ``delete``.
            replaying: Raise instead of enqueuing; used by the queue drain.
        """
        op_type, payload = operation_for("journal", entry, action)
        if action == "delete":

            async def write(user_id: str, key: Optional[bytes]) -> None:
                await self.remote.delete(JOURNAL_TABLE, {"user_id": user_id, "id": entry.id})

        else:
            if entry.decrypt_state.unreadable:
                return self._refuse_unreadable("journal entry", entry.id)

            async def write(user_id: str, key: Optional[bytes]) -> None:
                row = await envelope.journal_to_row(entry, user_id, key)
                await self.remote.upsert(JOURNAL_TABLE, row, CONFLICT_KEYS[JOURNAL_TABLE])

        return await self._push(op_type, payload, write, replaying)

    async def pull_journal_entries(
        self, user_id: str, key: Optional[bytes]
    ) -> list[JournalEntry]:
        rows = await self.remote.select(JOURNAL_TABLE, user_id, order_by="created_at")
        entries = []
        for row in rows:
            try:
                entries.append(await envelope.row_to_journal(row, key))
            except (KeyError, ValueError) as exc:
                logger.warning("Skipping malformed journal row: %s", exc)
        return entries

    # -- day commits ------------------------------------------------------

    async def push_day_commit(
        self, commit: DayCommit, action: str = "commit", replaying: bool = False
    ) -> SyncOutcome:
        """Upsert (``commit``) or delete (``delete``) the commit for a date."""
        op_type, payload = operation_for("schedule", commit, action)
        if action == "delete":

            async def write(user_id: str, key: Optional[bytes]) -> None:
                await self.remote.delete(
                    COMMITS_TABLE, {"user_id": user_id, "date": commit.date}
                )

        else:
            if commit.decrypt_state.unreadable:
                return self._refuse_unreadable("day commit", commit.date)

            async def write(user_id: str, key: Optional[bytes]) -> None:
                row = await envelope.commit_to_row(commit, user_id, key)
                await self.remote.upsert(COMMITS_TABLE, row, CONFLICT_KEYS[COMMITS_TABLE])

        return await self._push(op_type, payload, write, replaying)

    async def pull_day_commits(self, user_id: str, key: Optional[bytes]) -> list[DayCommit]:
        rows = await self.remote.select(COMMITS_TABLE, user_id, order_by="date")
        commits = []
        for row in rows:
            try:
                commits.append(await envelope.row_to_commit(row, key))
            except (KeyError, ValueError) as exc:
                logger.warning("Skipping malformed day commit row: %s", exc)
        return commits

    # -- tasks ------------------------------------------------------------

    async def push_task(
        self, task: Task, action: str = "update", replaying: bool = False
    ) -> SyncOutcome:
        """Upsert or delete one task remotely."""
        op_type, payload = operation_for("task", task, action)
        if action == "delete":

            async def write(user_id: str, key: Optional[bytes]) -> None:
                await self.remote.delete(TASKS_TABLE, {"user_id": user_id, "id": task.id})

        else:
            if task.decrypt_state.unreadable:
                return self._refuse_unreadable("task", task.id)

            async def write(user_id: str, key: Optional[bytes]) -> None:
                row = await envelope.task_to_row(task, user_id, key)
                await self.remote.upsert(TASKS_TABLE, row, CONFLICT_KEYS[TASKS_TABLE])

        return await self._push(op_type, payload, write, replaying)

    async def pull_tasks(self, user_id: str, key: Optional[bytes]) -> list[Task]:
        rows = await self.remote.select(TASKS_TABLE, user_id, order_by="created_at")
        tasks = []
        for row in rows:
            try:
                tasks.append(await envelope.row_to_task(row, key))
            except (KeyError, ValueError) as exc:
                logger.warning("Skipping malformed task row: %s", exc)
        return tasks

    # -- settings ---------------------------------------------------------

    async def push_settings(
        self, settings: UserSettings, replaying: bool = False
    ) -> SyncOutcome:
        """Upsert the account's settings row. The Gemini key stays local."""
        op_type, payload = operation_for("settings", settings, "update")

        async def write(user_id: str, key: Optional[bytes]) -> None:
            row = envelope.settings_to_row(settings, user_id)
            await self.remote.upsert(SETTINGS_TABLE, row, CONFLICT_KEYS[SETTINGS_TABLE])

        return await self._push(op_type, payload, write, replaying)

    async def pull_settings(self, user_id: str) -> Optional[dict[str, Any]]:
        row = await self.remote.select_one(SETTINGS_TABLE, user_id)
        return envelope.row_to_settings(row) if row else None

    # -- snapshot ---------------------------------------------------------

    async def pull_all(self) -> RemoteSnapshot:
        """Fetch every record the active account owns.

        Raises:
            NotAuthenticated: No account is signed in.
            RemoteError: The remote store could not be read.
        """
        user_id = await self.remote.current_user()
        if user_id is None:
            raise NotAuthenticated("Pull requires a signed-in account")
        key = await self.keycache.active_key(user_id)
        return RemoteSnapshot(
            journal_entries=await self.pull_journal_entries(user_id, key),
            day_commits=await self.pull_day_commits(user_id, key),
            tasks=await self.pull_tasks(user_id, key),
            settings=await self.pull_settings(user_id),
        )

    # -- queue replay -----------------------------------------------------

    async def replay(self, item: QueueItem) -> SyncOutcome:
        """Re-run a queued operation. Raises on transient failure."""
        entity, action = item.type.entity, _action(item.type)
        payload = item.payload
        try:
            return await self._replay(entity, action, payload)
        except ValidationError as exc:
            logger.error("Dropping unreadable queued %s: %s", item.type.value, exc)
            return SyncOutcome.DROPPED

    async def _replay(self, entity: str, action: str, payload: dict[str, Any]) -> SyncOutcome:
        if entity == "journal":
            return await self.push_journal_entry(
                JournalEntry.model_validate(payload), action, replaying=True
            )
        if entity == "task":
            return await self.push_task(Task.model_validate(payload), action, replaying=True)
        if entity == "schedule":
            return await self.push_day_commit(
                DayCommit.model_validate(payload), action, replaying=True
            )
        return await self.push_settings(UserSettings.model_validate(payload), replaying=True)
