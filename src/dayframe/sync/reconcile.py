"""
Reconciliation -- merge the remote snapshot into the local containers.

Runs once per sign-in and once per session resume. Policy:

    journal entries, tasks   union by id, local wins
    settings                 remote wins field by field, goals deep-merged
    day commits              by date:
        1. no local copy          -> adopt remote
        2. local finalized        -> ignore remote
        3. local committed only   -> keep local
        4. otherwise newer committed_at wins blocks; finalized_at is
           never dropped and committed is OR-ed across both sides
        5. ties (equal or missing) -> local, same preservation

A local record whose content could not be decrypted is refreshed from
a readable remote copy; it cannot hold local edits.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, TypeVar, Union

from pydantic import ValidationError

from ..audit import audit_event
from ..models import DayCommit, JournalEntry, Task, UserSettings, parse_timestamp
from .models import MergeReport

logger = logging.getLogger("dayframe.sync.reconcile")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Record = TypeVar("Record", JournalEntry, Task)


def merge_by_id(local: list[Record], remote: list[Record]) -> tuple[list[Record], int, int]:
    """Union two collections keyed by id. Local copies win.

    Returns:
        (merged, added, refreshed): the merged list newest first by
        ``created_at``, how many were new, and how many unreadable local
        copies were replaced by readable remote ones.
    """
    remote_by_id = {r.id: r for r in remote}
    local_ids = set()
    merged: list[Record] = []
    refreshed = 0
    for record in local:
        local_ids.add(record.id)
        incoming = remote_by_id.get(record.id)
        if (
            incoming is not None
            and record.decrypt_state.unreadable
            and not incoming.decrypt_state.unreadable
        ):
            merged.append(incoming)
            refreshed += 1
        else:
            merged.append(record)

    added = [r for r in remote if r.id not in local_ids]
    merged.extend(added)
    merged.sort(key=lambda r: parse_timestamp(r.created_at) or _EPOCH, reverse=True)
    return merged, len(added), refreshed


def _merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def merge_settings(local: UserSettings, remote: Optional[dict[str, Any]]) -> UserSettings:
    """Overlay remote settings on local ones.

    ``remote`` holds only the fields present remotely. Remote values
    that fail validation are ignored and the local value kept.
    """
    if not remote:
        return local
    overlay = {k: v for k, v in remote.items() if k != "user_goals"}
    goals = remote.get("user_goals")
    if isinstance(goals, dict):
        overlay["user_goals"] = _merge_dicts(local.user_goals, goals)

    data = {**local.model_dump(), **overlay}
    try:
        return UserSettings.model_validate(data)
    except ValidationError as exc:
        bad = {err["loc"][0] for err in exc.errors() if err["loc"]}
        logger.warning("Ignoring invalid remote settings fields: %s", ", ".join(map(str, bad)))
        return UserSettings.model_validate(
            {**local.model_dump(), **{k: v for k, v in overlay.items() if k not in bad}}
        )


def _committed_at(commit: DayCommit) -> datetime:
    return parse_timestamp(commit.committed_at) or _EPOCH


def merge_day_commit(
    local: Optional[DayCommit], remote: DayCommit
) -> tuple[DayCommit, str]:
    """Merge one remote commit into the local one for the same date.

    Returns:
        (merged, outcome) where outcome is ``added``, ``kept`` or
        ``replaced``.
    """
    if local is None:
        return remote, "added"

    finalized_at = local.finalized_at or remote.finalized_at
    committed = local.committed or remote.committed

    if local.decrypt_state.unreadable and not remote.decrypt_state.unreadable:
        return (
            remote.model_copy(update={"finalized_at": finalized_at, "committed": committed}),
            "replaced",
        )
    if local.finalized_at:
        return local, "kept"
    if local.committed and not remote.committed:
        return local, "kept"

    remote_newer = _committed_at(remote) > _committed_at(local)
    if remote_newer and not remote.decrypt_state.unreadable:
        merged = remote.model_copy(
            update={"finalized_at": finalized_at, "committed": committed}
        )
        return merged, "replaced"

    if finalized_at == local.finalized_at and committed == local.committed:
        return local, "kept"
    return local.model_copy(update={"finalized_at": finalized_at, "committed": committed}), "kept"


def merge_day_commits(
    local: list[DayCommit], remote: list[DayCommit]
) -> tuple[list[DayCommit], dict[str, int]]:
    """Merge commit collections by date, newest date first.

    Returns:
        (merged, counts) with counts keyed by merge outcome.
    """
    by_date = {c.date: c for c in local}
    counts = {"added": 0, "kept": 0, "replaced": 0}
    for incoming in remote:
        merged, outcome = merge_day_commit(by_date.get(incoming.date), incoming)
        by_date[incoming.date] = merged
        counts[outcome] += 1
    ordered = sorted(by_date.values(), key=lambda c: c.date, reverse=True)
    return ordered, counts


def _unreadable(records: list[Union[JournalEntry, Task, DayCommit]]) -> int:
    return sum(1 for r in records if r.decrypt_state.unreadable)


class Reconciler:
    """Pulls the remote snapshot once and writes merged collections back.

    Args:
        entities: Entity sync functions (source of the snapshot).
        journal: Journal container.
        schedule: Day-commit container.
        tasks: Task container.
        settings: Settings container.
        home: Dayframe home for the audit trail. None disables auditing.
    """

    def __init__(self, entities, journal, schedule, tasks, settings, home: Optional[Path] = None):
        self.entities = entities
        self.journal = journal
        self.schedule = schedule
        self.tasks = tasks
        self.settings = settings
        self._home = home

    async def pull_and_merge(self) -> MergeReport:
        """Pull everything for the active account and merge it locally.

        Each container is written once, in a batch, without triggering
        a push. Settings go through the skip-sync path.

        Raises:
            NotAuthenticated: No account is signed in.
            RemoteError: The remote store could not be read.
        """
        snapshot = await self.entities.pull_all()
        report = MergeReport()

        entries, report.journal_added, report.journal_refreshed = merge_by_id(
            self.journal.entries, snapshot.journal_entries
        )
        self.journal.set_entries(entries)

        tasks, report.tasks_added, report.tasks_refreshed = merge_by_id(
            self.tasks.tasks, snapshot.tasks
        )
        self.tasks.set_tasks(tasks)

        commits, counts = merge_day_commits(self.schedule.commits, snapshot.day_commits)
        report.commits_added = counts["added"]
        report.commits_replaced = counts["replaced"]
        report.commits_kept = counts["kept"]
        self.schedule.set_commits(commits)

        if snapshot.settings:
            merged = merge_settings(self.settings.settings, snapshot.settings)
            self.settings.update_settings(merged.model_dump(), skip_sync=True)
            report.settings_merged = True

        report.undecryptable = (
            _unreadable(snapshot.journal_entries)
            + _unreadable(snapshot.tasks)
            + _unreadable(snapshot.day_commits)
        )
        if report.undecryptable:
            logger.warning(
                "%d pulled records could not be decrypted; unlock to read them",
                report.undecryptable,
            )
        logger.info(
            "Merged remote snapshot: +%d journal, +%d tasks, +%d/%d commits",
            report.journal_added,
            report.tasks_added,
            report.commits_added,
            report.commits_replaced,
        )
        if self._home is not None:
            audit_event(
                self._home,
                "SYNC_PULL",
                "Remote snapshot merged",
                metadata=report.model_dump(),
            )
        return report
