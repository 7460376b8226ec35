"""
Local state containers -- the device-side source of truth.

Each container owns one collection, persists it through a LocalStore
after every change, and hands the changed record to a sync dispatcher
(normally the SyncEngine) which pushes it in the background. Mutations
return immediately; they never wait for the network.

Containers and storage keys:
    JournalStore   journal_entries_v1
    ScheduleStore  schedule_commits_v1
    TaskStore      tasks_v1
    SettingsStore  user_settings_v1

``set_*`` methods replace a whole collection in one write without
dispatching anything; reconciliation uses them.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError

from .errors import CommitLocked, StorageQuotaExceeded
from .models import (
    DayCommit,
    DecryptState,
    JournalEntry,
    Task,
    TimeBlock,
    UserSettings,
    parse_timestamp,
    sanitize_ollama_url,
    today_iso,
    utc_now_iso,
)
from .storage import LocalStore

logger = logging.getLogger("dayframe.stores")

JOURNAL_KEY = "journal_entries_v1"
SCHEDULE_KEY = "schedule_commits_v1"
TASKS_KEY = "tasks_v1"
SETTINGS_KEY = "user_settings_v1"

# dispatcher(entity, record, action): schedules a background push.
SyncDispatcher = Callable[[str, Any, str], None]


def _load_models(local: LocalStore, key: str, model: type[BaseModel]) -> list:
    records = []
    for data in local.get(key) or []:
        try:
            records.append(model.model_validate(data))
        except ValidationError as exc:
            logger.warning("Skipping unreadable record in %s: %s", key, exc)
    return records


def _save_models(local: LocalStore, key: str, records: list[BaseModel]) -> None:
    """Persist a collection, dropping its oldest tail if storage is full.

    Collections are kept newest first, so trimming from the end loses
    the oldest records. The in-memory collection is untouched.
    """
    keep = list(records)
    while True:
        try:
            local.set(key, [r.model_dump(mode="json") for r in keep])
            if len(keep) < len(records):
                logger.error(
                    "Storage full: persisted %d of %d records for %s",
                    len(keep),
                    len(records),
                    key,
                )
            return
        except StorageQuotaExceeded as exc:
            if not keep:
                logger.error("Cannot persist %s at all: %s", key, exc)
                return
            keep = keep[: len(keep) - max(1, len(keep) // 10)]


class _Container:
    def __init__(self, local: LocalStore, dispatcher: Optional[SyncDispatcher] = None):
        self._local = local
        self.dispatcher = dispatcher

    def _dispatch(self, entity: str, record: Any, action: str) -> None:
        if self.dispatcher is not None:
            self.dispatcher(entity, record, action)


# ---------------------------------------------------------------------------
# Journal
# ---------------------------------------------------------------------------


class JournalStore(_Container):
    """Journal entries, newest first."""

    def __init__(self, local: LocalStore, dispatcher: Optional[SyncDispatcher] = None):
        super().__init__(local, dispatcher)
        self.entries: list[JournalEntry] = _load_models(local, JOURNAL_KEY, JournalEntry)

    def _save(self) -> None:
        _save_models(self._local, JOURNAL_KEY, self.entries)

    def get(self, entry_id: str) -> Optional[JournalEntry]:
        return next((e for e in self.entries if e.id == entry_id), None)

    def add_entry(self, content: str, **fields: Any) -> JournalEntry:
        entry = JournalEntry(content=content, **fields)
        self.entries.insert(0, entry)
        self._save()
        self._dispatch("journal", entry, "insert")
        return entry

    def update_entry(self, entry_id: str, **updates: Any) -> Optional[JournalEntry]:
        """Apply field updates to one entry. Returns None if it is unknown."""
        for i, entry in enumerate(self.entries):
            if entry.id == entry_id:
                data = {**entry.model_dump(), **updates, "id": entry.id}
                if "content" in updates:
                    data["decrypt_state"] = DecryptState.OK
                updated = JournalEntry.model_validate(data)
                self.entries[i] = updated
                self._save()
                self._dispatch("journal", updated, "update")
                return updated
        return None

    def remove_entry(self, entry_id: str) -> bool:
        entry = self.get(entry_id)
        if entry is None:
            return False
        self.entries = [e for e in self.entries if e.id != entry_id]
        self._save()
        self._dispatch("journal", entry, "delete")
        return True

    def clear_all(self) -> None:
        """Forget every entry on this device. Remote copies are kept."""
        self.entries = []
        self._save()

    def set_entries(self, entries: list[JournalEntry]) -> None:
        self.entries = list(entries)
        self._save()


def search_entries(
    entries: list[JournalEntry],
    query: Optional[str] = None,
    mood: Optional[str] = None,
    tag: Optional[str] = None,
) -> list[JournalEntry]:
    """Filter entries by content substring, mood, and tag."""
    needle = query.lower() if query else None
    return [
        e
        for e in entries
        if (not needle or needle in e.content.lower())
        and (not mood or e.mood == mood)
        and (not tag or tag in e.tags)
    ]


def weekly_snapshot(entries: list[JournalEntry]) -> dict[str, Any]:
    """Summarize non-sensitive entries for the weekly view.

    Returns:
        dict: ``weeks`` (entry count per ISO week), ``most_frequent_feelings``
        and ``top_themes`` (top three moods / tags), ``sample_entries``.
    """
    visible = [e for e in entries if not e.is_sensitive]
    weeks: Counter = Counter()
    for entry in visible:
        created = parse_timestamp(entry.created_at)
        if created is not None:
            year, week, _ = created.isocalendar()
            weeks[f"{year}-w{week}"] += 1

    moods = Counter(e.mood for e in visible if e.mood)
    themes = Counter(t for e in visible for t in e.tags)
    return {
        "weeks": dict(weeks),
        "most_frequent_feelings": [m for m, _ in moods.most_common(3)],
        "top_themes": [t for t, _ in themes.most_common(3)],
        "sample_entries": visible[:3],
    }


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------


class ScheduleStore(_Container):
    """Day commits, one per date, newest date first.

    A finalized commit is locked: committing over it, editing its blocks,
    or clearing it raises CommitLocked.
    """

    def __init__(self, local: LocalStore, dispatcher: Optional[SyncDispatcher] = None):
        super().__init__(local, dispatcher)
        self.commits: list[DayCommit] = _load_models(local, SCHEDULE_KEY, DayCommit)

    def _save(self) -> None:
        self.commits.sort(key=lambda c: c.date, reverse=True)
        _save_models(self._local, SCHEDULE_KEY, self.commits)

    def _replace(self, commit: DayCommit) -> None:
        self.commits = [c for c in self.commits if c.date != commit.date] + [commit]
        self._save()

    def get_commit(self, date: str) -> Optional[DayCommit]:
        return next((c for c in self.commits if c.date == date), None)

    def today(self) -> Optional[DayCommit]:
        return self.get_commit(today_iso())

    def _unlocked(self, date: str) -> Optional[DayCommit]:
        existing = self.get_commit(date)
        if existing is not None and existing.finalized_at:
            raise CommitLocked(f"Day {date} is finalized")
        return existing

    def commit_day(self, blocks: list[TimeBlock], date: Optional[str] = None) -> DayCommit:
        """Commit a schedule for ``date`` (default today), replacing any draft."""
        date = date or today_iso()
        self._unlocked(date)
        commit = DayCommit(
            date=date,
            blocks=list(blocks),
            committed=True,
            committed_at=utc_now_iso(),
        )
        self._replace(commit)
        self._dispatch("schedule", commit, "commit")
        return commit

    def finalize_day(self, date: Optional[str] = None) -> DayCommit:
        """Lock the commit for ``date``. Finalizing twice is a no-op.

        Raises:
            KeyError: No commit exists for that date.
        """
        date = date or today_iso()
        existing = self.get_commit(date)
        if existing is None:
            raise KeyError(f"No commit for {date}")
        if existing.finalized_at:
            return existing
        finalized = existing.model_copy(
            update={"finalized_at": datetime.now(timezone.utc).isoformat()}
        )
        self._replace(finalized)
        self._dispatch("schedule", finalized, "commit")
        return finalized

    def update_block_completion(
        self, block_id: str, completed: bool, date: Optional[str] = None
    ) -> Optional[DayCommit]:
        date = date or today_iso()
        commit = self._unlocked(date)
        if commit is None:
            return None
        blocks = [
            b.model_copy(update={"completed": completed}) if b.id == block_id else b
            for b in commit.blocks
        ]
        updated = commit.model_copy(update={"blocks": blocks})
        self._replace(updated)
        self._dispatch("schedule", updated, "commit")
        return updated

    def clear_day(self, date: Optional[str] = None) -> bool:
        date = date or today_iso()
        commit = self._unlocked(date)
        if commit is None:
            return False
        self.commits = [c for c in self.commits if c.date != date]
        self._save()
        self._dispatch("schedule", commit, "delete")
        return True

    def set_commits(self, commits: list[DayCommit]) -> None:
        self.commits = list(commits)
        self._save()


def format_schedule_for_ai(commit: Optional[DayCommit]) -> str:
    """Render a committed day as plain text for an assistant prompt."""
    if commit is None or not commit.committed:
        return "No schedule committed for today."

    lines = []
    for block in commit.blocks:
        optional = " (optional)" if block.optional else ""
        streak = f" [{block.streak} day streak]" if block.streak else ""
        lines.append(f"- {block.identity}: {block.start} - {block.end}{optional}{streak}")

    committed_at = parse_timestamp(commit.committed_at)
    when = committed_at.astimezone().strftime("%H:%M") if committed_at else "unknown time"
    return f"Today's committed schedule (committed at {when}):\n" + "\n".join(lines)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class TaskStore(_Container):
    """To-do items, newest first."""

    def __init__(self, local: LocalStore, dispatcher: Optional[SyncDispatcher] = None):
        super().__init__(local, dispatcher)
        self.tasks: list[Task] = _load_models(local, TASKS_KEY, Task)

    def _save(self) -> None:
        _save_models(self._local, TASKS_KEY, self.tasks)

    def get(self, task_id: str) -> Optional[Task]:
        return next((t for t in self.tasks if t.id == task_id), None)

    def add_task(self, text: str, **fields: Any) -> Task:
        task = Task(text=text, **fields)
        self.tasks.insert(0, task)
        self._save()
        self._dispatch("task", task, "insert")
        return task

    def update_task(self, task_id: str, **updates: Any) -> Optional[Task]:
        for i, task in enumerate(self.tasks):
            if task.id == task_id:
                data = {**task.model_dump(), **updates, "id": task.id}
                if "text" in updates:
                    data["decrypt_state"] = DecryptState.OK
                updated = Task.model_validate(data)
                self.tasks[i] = updated
                self._save()
                self._dispatch("task", updated, "update")
                return updated
        return None

    def toggle_task(self, task_id: str) -> Optional[Task]:
        task = self.get(task_id)
        if task is None:
            return None
        return self.update_task(task_id, completed=not task.completed)

    def remove_task(self, task_id: str) -> bool:
        task = self.get(task_id)
        if task is None:
            return False
        self.tasks = [t for t in self.tasks if t.id != task_id]
        self._save()
        self._dispatch("task", task, "delete")
        return True

    def clear_all(self) -> None:
        self.tasks = []
        self._save()

    def set_tasks(self, tasks: list[Task]) -> None:
        self.tasks = list(tasks)
        self._save()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class SettingsStore(_Container):
    """The account's settings record."""

    def __init__(self, local: LocalStore, dispatcher: Optional[SyncDispatcher] = None):
        super().__init__(local, dispatcher)
        raw = local.get(SETTINGS_KEY)
        try:
            self.settings = UserSettings.model_validate(raw) if raw else UserSettings()
        except ValidationError as exc:
            logger.warning("Unreadable local settings, using defaults: %s", exc)
            self.settings = UserSettings()

    def update_settings(self, updates: dict[str, Any], skip_sync: bool = False) -> UserSettings:
        """Merge ``updates`` into the settings and persist them.

        Args:
            updates: Fields to change.
            skip_sync: Do not push the result (used when the values just
                came from the remote store).

        Raises:
            pydantic.ValidationError: An update has an invalid value.
        """
        updates = dict(updates)
        if "ollama_url" in updates:
            updates["ollama_url"] = sanitize_ollama_url(updates["ollama_url"])
        self.settings = UserSettings.model_validate({**self.settings.model_dump(), **updates})
        try:
            self._local.set(SETTINGS_KEY, self.settings.model_dump(mode="json"))
        except StorageQuotaExceeded as exc:
            logger.error("Could not persist settings: %s", exc)
        if not skip_sync:
            self._dispatch("settings", self.settings, "update")
        return self.settings
