"""
Sync data models -- configuration, queue entries, and operation results.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..models import DayCommit, JournalEntry, Task


class SyncConfig(BaseModel):
    """Sync layer configuration, read from ``<home>/config/sync.yaml``."""

    remote_url: Optional[str] = None
    remote_key_env: str = "DAYFRAME_REMOTE_KEY"
    remote_timeout_seconds: float = 15.0

    drain_interval_seconds: float = 30.0
    queue_capacity: int = 100
    max_retries: int = 5
    max_age_days: int = 7
    base_backoff_seconds: float = 30.0
    max_backoff_seconds: float = 3600.0

    password_ttl_minutes: int = 30
    pbkdf2_iterations: int = 100_000
    storage_quota_bytes: Optional[int] = None


class OperationType(str, Enum):
    """Kinds of pending remote operation held by the retry queue."""

    JOURNAL_INSERT = "journal_insert"
    JOURNAL_UPDATE = "journal_update"
    JOURNAL_DELETE = "journal_delete"
    SCHEDULE_COMMIT = "schedule_commit"
    SCHEDULE_DELETE = "schedule_delete"
    TASK_INSERT = "task_insert"
    TASK_UPDATE = "task_update"
    TASK_DELETE = "task_delete"
    SETTINGS_UPDATE = "settings_update"

    @property
    def entity(self) -> str:
        return self.value.split("_", 1)[0]


def record_key_for(op_type: OperationType, payload: dict[str, Any]) -> str:
    """The identity a queue entry deduplicates on.

    Journal entries and tasks use their id, day commits their date, and
    settings collapse to one slot per account.
    """
    entity = op_type.entity
    if entity == "schedule":
        return str(payload.get("date", ""))
    if entity == "settings":
        return str(payload.get("user_id") or "settings")
    return str(payload.get("id", ""))


class QueueItem(BaseModel):
    """One pending remote operation."""

    type: OperationType
    payload: dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    retry_count: int = 0
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None

    @property
    def record_key(self) -> str:
        return record_key_for(self.type, self.payload)


class DrainReport(BaseModel):
    """Outcome of one pass over the retry queue."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    dropped: int = 0
    deferred: int = 0
    skipped_reason: Optional[str] = None


class SyncOutcome(str, Enum):
    """What happened to a single push."""

    SYNCED = "synced"
    QUEUED = "queued"
    DROPPED = "dropped"


class RemoteSnapshot(BaseModel):
    """Everything pulled from the remote store for one account."""

    journal_entries: list[JournalEntry] = Field(default_factory=list)
    day_commits: list[DayCommit] = Field(default_factory=list)
    tasks: list[Task] = Field(default_factory=list)
    settings: Optional[dict[str, Any]] = None


class MergeReport(BaseModel):
    """Counts produced by one pull-and-merge run."""

    journal_added: int = 0
    journal_refreshed: int = 0
    tasks_added: int = 0
    tasks_refreshed: int = 0
    commits_added: int = 0
    commits_replaced: int = 0
    commits_kept: int = 0
    settings_merged: bool = False
    undecryptable: int = 0
