"""
Retry queue -- durable, bounded, deduplicating backlog of remote writes.

Every push that could not reach the remote store lands here and is
replayed by the periodic drain. The whole queue is one JSON blob in the
local store, rewritten after every mutation, so a restart picks up
exactly where the last process stopped.

Rules:
    - at most ``capacity`` entries; the oldest is evicted for a newcomer
    - one entry per (operation type, record key); repeats refresh it
    - entries that reach ``max_retries`` failures, or get older than
      ``max_age``, are dropped for good (loudly)
    - failed entries back off exponentially before their next attempt
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from ..audit import audit_event
from ..errors import StorageQuotaExceeded
from ..storage import LocalStore
from .models import DrainReport, OperationType, QueueItem, SyncOutcome, record_key_for

logger = logging.getLogger("dayframe.sync.queue")

QUEUE_STORAGE_KEY = "sync_queue"

Handler = Callable[[QueueItem], Awaitable[Any]]
ReadyProbe = Callable[[], Awaitable[Optional[str]]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RetryQueue:
    """Persistent retry queue over a LocalStore.

    Args:
        local: Device-local store holding the queue blob.
        capacity: Maximum number of entries.
        max_retries: Failures after which an entry is dropped.
        max_age: Age after which an entry is dropped.
        base_backoff: Seconds before the first retry of a failed entry.
        max_backoff: Upper bound on the backoff delay.
        home: Dayframe home for audit events. None disables auditing.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        local: LocalStore,
        capacity: int = 100,
        max_retries: int = 5,
        max_age: timedelta = timedelta(days=7),
        base_backoff: float = 30.0,
        max_backoff: float = 3600.0,
        home: Optional[Path] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._local = local
        self.capacity = capacity
        self.max_retries = max_retries
        self.max_age = max_age
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self._home = home
        self._clock = clock

    # -- persistence ------------------------------------------------------

    def _load(self) -> list[QueueItem]:
        raw = self._local.get(QUEUE_STORAGE_KEY) or []
        items: list[QueueItem] = []
        for data in raw:
            try:
                items.append(QueueItem.model_validate(data))
            except ValidationError as exc:
                logger.error("Discarding unreadable queue entry: %s", exc)
        return items

    def _save(self, items: list[QueueItem]) -> None:
        """Write the queue, trimming the oldest half on quota errors."""
        keep = list(items)
        while True:
            try:
                self._local.set(
                    QUEUE_STORAGE_KEY, [i.model_dump(mode="json") for i in keep]
                )
                if len(keep) < len(items):
                    logger.warning(
                        "Storage full: sync queue trimmed from %d to %d entries",
                        len(items),
                        len(keep),
                    )
                return
            except StorageQuotaExceeded as exc:
                if not keep:
                    logger.error("Cannot persist even an empty sync queue: %s", exc)
                    return
                keep = sorted(keep, key=lambda i: i.enqueued_at)[len(keep) // 2 + len(keep) % 2:]

    # -- inspection -------------------------------------------------------

    def _expired(self, item: QueueItem, now: datetime) -> Optional[str]:
        if item.retry_count >= self.max_retries:
            return f"gave up after {item.retry_count} failed attempts"
        if now - item.enqueued_at >= self.max_age:
            return f"older than {self.max_age.days} days"
        return None

    def _drop_loudly(self, item: QueueItem, reason: str) -> None:
        logger.error(
            "Dropping queued %s for %s: %s (last error: %s)",
            item.type.value,
            item.record_key,
            reason,
            item.last_error,
        )
        if self._home is not None:
            audit_event(
                self._home,
                "SYNC_DROP",
                f"{item.type.value} {item.record_key}: {reason}",
                metadata={"last_error": item.last_error, "retry_count": item.retry_count},
            )

    def prune(self) -> list[QueueItem]:
        """Drop exhausted and stale entries. Returns what was dropped."""
        now = self._clock()
        items = self._load()
        kept, dropped = [], []
        for item in items:
            reason = self._expired(item, now)
            if reason:
                self._drop_loudly(item, reason)
                dropped.append(item)
            else:
                kept.append(item)
        if dropped:
            self._save(kept)
        return dropped

    def items(self) -> list[QueueItem]:
        self.prune()
        return self._load()

    def __len__(self) -> int:
        return len(self.items())

    def find(self, item_id: str) -> Optional[QueueItem]:
        return next((i for i in self._load() if i.id == item_id), None)

    # -- mutation ---------------------------------------------------------

    def enqueue(
        self,
        op_type: OperationType,
        payload: dict[str, Any],
        error: Optional[str] = None,
        failed: bool = True,
    ) -> QueueItem:
        """Queue an operation, or refresh the existing one for its record.

        Args:
            op_type: Operation kind.
            payload: Serialized record (latest local copy).
            error: Message from the failure that caused the enqueue.
            failed: Whether a remote attempt was actually made and failed.
                Writes queued without an attempt (offline, signed out)
                refresh the entry without spending a retry.

        Returns:
            The new or refreshed entry.
        """
        self.prune()
        items = self._load()
        key = record_key_for(op_type, payload)
        now = self._clock()

        for item in items:
            if item.type == op_type and item.record_key == key:
                if failed:
                    item.retry_count += 1
                item.enqueued_at = now
                item.payload = payload
                item.last_error = error
                self._save(items)
                logger.debug(
                    "Refreshed queued %s for %s (retries=%d)",
                    op_type.value,
                    key,
                    item.retry_count,
                )
                return item

        if len(items) >= self.capacity:
            items.sort(key=lambda i: i.enqueued_at)
            evicted = items[: len(items) - self.capacity + 1]
            items = items[len(evicted):]
            for old in evicted:
                logger.warning(
                    "Sync queue full: evicted %s for %s", old.type.value, old.record_key
                )

        item = QueueItem(
            type=op_type,
            payload=payload,
            enqueued_at=now,
            retry_count=1 if failed else 0,
            last_error=error,
        )
        items.append(item)
        self._save(items)
        logger.info("Queued %s for %s", op_type.value, key)
        return item

    def remove_item(self, item_id: str) -> bool:
        items = self._load()
        kept = [i for i in items if i.id != item_id]
        if len(kept) == len(items):
            return False
        self._save(kept)
        return True

    def discard_record(self, entity: str, record_key: str) -> int:
        """Drop every entry for one record, e.g. after a fresh push wins."""
        items = self._load()
        kept = [
            i for i in items if not (i.type.entity == entity and i.record_key == record_key)
        ]
        if len(kept) != len(items):
            self._save(kept)
        return len(items) - len(kept)

    def clear(self) -> int:
        count = len(self._load())
        self._local.remove(QUEUE_STORAGE_KEY)
        return count

    def _backoff(self, retry_count: int) -> timedelta:
        delay = min(self.max_backoff, self.base_backoff * 2 ** max(retry_count - 1, 0))
        return timedelta(seconds=delay * random.uniform(0.8, 1.2))

    def record_failure(self, item_id: str, error: str) -> Optional[QueueItem]:
        """Count a failed replay. Returns None if the entry was dropped."""
        items = self._load()
        item = next((i for i in items if i.id == item_id), None)
        if item is None:
            return None
        item.retry_count += 1
        item.last_error = error
        reason = self._expired(item, self._clock())
        if reason:
            self._drop_loudly(item, reason)
            self._save([i for i in items if i.id != item_id])
            return None
        item.next_attempt_at = self._clock() + self._backoff(item.retry_count)
        self._save(items)
        return item

    # -- drain ------------------------------------------------------------

    async def drain(
        self,
        handler: Handler,
        ready: Optional[ReadyProbe] = None,
        force: bool = False,
    ) -> DrainReport:
        """Replay queued operations in insertion order.

        One failing entry never stops the pass. Safe to call on a timer
        and to overlap with itself: entries removed by a concurrent pass
        are skipped, and every operation is an idempotent upsert/delete.

        Args:
            handler: Replays one entry; raises on failure. Returning
                ``SyncOutcome.DROPPED`` removes the entry without a retry.
            ready: Returns a reason to skip the whole pass (offline,
                signed out), or None to proceed.
            force: Ignore per-entry backoff.
        """
        report = DrainReport()
        if ready is not None:
            reason = await ready()
            if reason:
                report.skipped_reason = reason
                return report

        report.dropped = len(self.prune())
        for queued in self._load():
            item = self.find(queued.id)
            if item is None:
                continue
            if not force and item.next_attempt_at and item.next_attempt_at > self._clock():
                report.deferred += 1
                continue

            report.attempted += 1
            try:
                outcome = await handler(item)
            except Exception as exc:
                report.failed += 1
                logger.warning("Replay of %s for %s failed: %s", item.type.value, item.record_key, exc)
                if self.record_failure(item.id, str(exc)) is None:
                    report.dropped += 1
                continue

            if outcome is SyncOutcome.DROPPED:
                self.remove_item(item.id)
                report.dropped += 1
                continue

            current = self.find(item.id)
            if current is not None and current.enqueued_at != item.enqueued_at:
                # Refreshed with a newer payload mid-replay; send that next pass.
                report.succeeded += 1
                continue
            self.remove_item(item.id)
            report.succeeded += 1

        if report.attempted:
            logger.info(
                "Drained sync queue: %d ok, %d failed, %d dropped, %d deferred",
                report.succeeded,
                report.failed,
                report.dropped,
                report.deferred,
            )
        return report
