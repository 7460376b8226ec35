"""
Record <-> remote row codecs, encrypting sensitive fields on the way out.

Each encryptable row carries three companions next to its plaintext
columns: ``encrypted``, ``encryption_version``, and one
``encrypted_<field>`` payload. When ``encrypted`` is true the plaintext
columns are null and the remote store sees only ciphertext.

    journal_entries.encrypted_content  JSON {content, title, ai_summary},
                                       each value its own AES-GCM payload
    schedule_commits.encrypted_blocks  AES-GCM payload of the blocks JSON
    tasks.encrypted_text               AES-GCM payload of the task text

Decoding never raises for crypto problems: an unreadable record comes
back with empty sensitive fields and a DecryptState saying why, so one
bad row cannot block a pull.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from pydantic import ValidationError

from ..errors import DecryptionFailed
from ..models import (
    DayCommit,
    DecryptState,
    JournalEntry,
    Task,
    TimeBlock,
    UserSettings,
    utc_now_iso,
)
from . import crypto

logger = logging.getLogger("dayframe.sync.envelope")

# Settings columns mirrored remotely. The Gemini key never leaves the device.
_OLLAMA_FIELDS = ("ai_provider", "ollama_url", "ollama_model")
_PLAIN_SETTINGS_FIELDS = (
    "theme",
    "widget_enabled",
    "wake_up_time",
    "wake_up_enabled",
    "evening_wind_down_time",
    "evening_wind_down_enabled",
    "commit_cutoff_time",
)


def _companions(encrypted: bool) -> dict[str, Any]:
    return {"encrypted": encrypted, "encryption_version": crypto.ENCRYPTION_VERSION}


# ---------------------------------------------------------------------------
# Journal entries
# ---------------------------------------------------------------------------


async def journal_to_row(
    entry: JournalEntry, user_id: str, key: Optional[bytes]
) -> dict[str, Any]:
    """Build the ``journal_entries`` row for an entry."""
    row: dict[str, Any] = {
        "id": entry.id,
        "user_id": user_id,
        "mood": entry.mood,
        "tags": list(entry.tags),
        "is_sensitive": entry.is_sensitive,
        "visibility": entry.visibility,
        "created_at": entry.created_at,
        "updated_at": utc_now_iso(),
    }
    if key is None:
        row.update(
            title=entry.title,
            content=entry.content or "",
            ai_summary=entry.ai_summary,
            encrypted_content=None,
            **_companions(False),
        )
        return row

    bundle = {
        "content": await crypto.encrypt(entry.content or "", key),
        "title": await crypto.encrypt(entry.title, key) if entry.title else None,
        "ai_summary": (
            await crypto.encrypt(entry.ai_summary, key) if entry.ai_summary else None
        ),
    }
    row.update(
        title=None,
        content=None,
        ai_summary=None,
        encrypted_content=json.dumps(bundle),
        **_companions(True),
    )
    return row


async def row_to_journal(row: dict[str, Any], key: Optional[bytes]) -> JournalEntry:
    """Rebuild a JournalEntry from a remote row."""
    base = {
        "id": row["id"],
        "mood": row.get("mood"),
        "tags": row.get("tags") or [],
        "is_sensitive": bool(row.get("is_sensitive")),
        "visibility": row.get("visibility") or "private",
        "created_at": row.get("created_at") or utc_now_iso(),
    }
    if not row.get("encrypted"):
        return JournalEntry(
            **base,
            title=row.get("title"),
            content=row.get("content") or "",
            ai_summary=row.get("ai_summary"),
        )

    payload = row.get("encrypted_content")
    state = _precheck(payload, key)
    if state is not None:
        return JournalEntry(**base, decrypt_state=state)

    try:
        bundle = json.loads(payload)
        content = await crypto.decrypt(bundle["content"], key)
        title = await crypto.decrypt(bundle["title"], key) if bundle.get("title") else None
        summary = (
            await crypto.decrypt(bundle["ai_summary"], key)
            if bundle.get("ai_summary")
            else None
        )
    except (DecryptionFailed, ValueError, KeyError, TypeError) as exc:
        logger.warning("Could not decrypt journal entry %s: %s", row["id"], exc)
        return JournalEntry(**base, decrypt_state=DecryptState.FAILED)

    return JournalEntry(**base, title=title, content=content, ai_summary=summary)


# ---------------------------------------------------------------------------
# Day commits
# ---------------------------------------------------------------------------


async def commit_to_row(
    commit: DayCommit, user_id: str, key: Optional[bytes]
) -> dict[str, Any]:
    """Build the ``schedule_commits`` row for a day commit."""
    blocks = [b.model_dump(mode="json") for b in commit.blocks]
    row: dict[str, Any] = {
        "id": f"{user_id}:{commit.date}",
        "user_id": user_id,
        "date": commit.date,
        "committed": commit.committed,
        "committed_at": commit.committed_at,
        "finalized_at": commit.finalized_at,
    }
    if key is None:
        row.update(blocks=blocks, encrypted_blocks=None, **_companions(False))
    else:
        row.update(
            blocks=None,
            encrypted_blocks=await crypto.encrypt(json.dumps(blocks), key),
            **_companions(True),
        )
    return row


async def row_to_commit(row: dict[str, Any], key: Optional[bytes]) -> DayCommit:
    """Rebuild a DayCommit from a remote row."""
    committed = row.get("committed")
    base = {
        "date": str(row["date"]),
        "committed": True if committed is None else bool(committed),
        "committed_at": row.get("committed_at"),
        "finalized_at": row.get("finalized_at"),
    }
    if not row.get("encrypted"):
        return DayCommit(**base, blocks=_parse_blocks(row.get("blocks") or [], row))

    payload = row.get("encrypted_blocks")
    state = _precheck(payload, key)
    if state is not None:
        return DayCommit(**base, decrypt_state=state)

    try:
        blocks = json.loads(await crypto.decrypt(payload, key))
        return DayCommit(**base, blocks=[TimeBlock.model_validate(b) for b in blocks])
    except (DecryptionFailed, ValueError, TypeError) as exc:
        logger.warning("Could not decrypt day commit %s: %s", base["date"], exc)
        return DayCommit(**base, decrypt_state=DecryptState.FAILED)


def _parse_blocks(raw: Any, row: dict[str, Any]) -> list[TimeBlock]:
    try:
        return [TimeBlock.model_validate(b) for b in raw]
    except (ValidationError, TypeError) as exc:
        logger.warning("Malformed blocks on commit %s: %s", row.get("date"), exc)
        return []


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


async def task_to_row(task: Task, user_id: str, key: Optional[bytes]) -> dict[str, Any]:
    """Build the ``tasks`` row for a task."""
    row: dict[str, Any] = {
        "id": task.id,
        "user_id": user_id,
        "completed": task.completed,
        "created_at": task.created_at,
        "updated_at": utc_now_iso(),
    }
    if key is None:
        row.update(text=task.text or "", encrypted_text=None, **_companions(False))
    else:
        row.update(
            text=None,
            encrypted_text=await crypto.encrypt(task.text or "", key),
            **_companions(True),
        )
    return row


async def row_to_task(row: dict[str, Any], key: Optional[bytes]) -> Task:
    """Rebuild a Task from a remote row."""
    base = {
        "id": row["id"],
        "completed": bool(row.get("completed")),
        "created_at": row.get("created_at") or utc_now_iso(),
    }
    if not row.get("encrypted"):
        return Task(**base, text=row.get("text") or "")

    payload = row.get("encrypted_text")
    state = _precheck(payload, key)
    if state is not None:
        return Task(**base, decrypt_state=state)

    try:
        return Task(**base, text=await crypto.decrypt(payload, key))
    except DecryptionFailed as exc:
        logger.warning("Could not decrypt task %s: %s", row["id"], exc)
        return Task(**base, decrypt_state=DecryptState.FAILED)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def settings_to_row(settings: UserSettings, user_id: str) -> dict[str, Any]:
    """Build the ``user_settings`` row. Settings are not encrypted."""
    row: dict[str, Any] = {
        "user_id": user_id,
        "ollama_config": {f: getattr(settings, f) for f in _OLLAMA_FIELDS},
        "user_goals": settings.user_goals,
        "updated_at": utc_now_iso(),
    }
    for field in _PLAIN_SETTINGS_FIELDS:
        row[field] = getattr(settings, field)
    return row


def row_to_settings(row: dict[str, Any]) -> dict[str, Any]:
    """Extract the settings fields actually present on a remote row.

    Returns a partial mapping so absent columns never masquerade as
    remote values during the merge.
    """
    values: dict[str, Any] = {}
    ollama = row.get("ollama_config") or {}
    for field in _OLLAMA_FIELDS:
        if ollama.get(field) is not None:
            values[field] = ollama[field]
    for field in _PLAIN_SETTINGS_FIELDS:
        if row.get(field) is not None:
            values[field] = row[field]
    if isinstance(row.get("user_goals"), dict):
        values["user_goals"] = row["user_goals"]
    return values


def _precheck(payload: Optional[str], key: Optional[bytes]) -> Optional[DecryptState]:
    """Short-circuit state for payloads that cannot be decrypted at all."""
    if not payload:
        return DecryptState.EMPTY
    if key is None:
        return DecryptState.LOCKED
    return None
