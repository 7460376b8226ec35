"""
Pydantic models for the records a dayframe account owns.

Four record kinds travel through the sync layer: journal entries,
day-schedule commits, tasks, and user settings. Timestamps stay ISO-8601
strings because that is what the remote store speaks; the helpers at the
bottom of this module turn them into comparable instants.
"""

from __future__ import annotations

import uuid
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

DEFAULT_OLLAMA_URL = "http://localhost:11434"
_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


def new_id() -> str:
    """Opaque record identifier."""
    return uuid.uuid4().hex[:12]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def today_iso() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class CommitStatus(str, Enum):
    """Lifecycle of a day commit.

    ``draft`` can move to ``committed``; ``committed`` can move to
    ``finalized``; nothing moves backwards.
    """

    DRAFT = "draft"
    COMMITTED = "committed"
    FINALIZED = "finalized"


class DecryptState(str, Enum):
    """What happened to a pulled record's sensitive fields.

    ``ok``: plaintext (or decrypted) content is present.
    ``empty``: the record was encrypted but carried no payload.
    ``failed``: a payload exists but could not be decrypted.
    ``locked``: a payload exists but no password is cached.
    """

    OK = "ok"
    EMPTY = "empty"
    FAILED = "failed"
    LOCKED = "locked"

    @property
    def unreadable(self) -> bool:
        return self in (DecryptState.FAILED, DecryptState.LOCKED)


class TimeBlock(BaseModel):
    """One scheduled block on the day board."""

    id: str = Field(default_factory=new_id)
    identity: str
    start: str
    end: str
    optional: bool = False
    streak: Optional[int] = None
    completed: Optional[bool] = None


class DayCommit(BaseModel):
    """The committed schedule for one calendar date.

    Keyed by ``date``; there is never more than one per account and date.
    The boolean ``committed`` flag and ``finalized_at`` timestamp are the
    wire format; code reasons in terms of :attr:`status`.
    """

    date: str
    blocks: list[TimeBlock] = Field(default_factory=list)
    committed: bool = False
    committed_at: Optional[str] = None
    finalized_at: Optional[str] = None
    decrypt_state: DecryptState = DecryptState.OK

    @property
    def status(self) -> CommitStatus:
        if self.finalized_at:
            return CommitStatus.FINALIZED
        if self.committed:
            return CommitStatus.COMMITTED
        return CommitStatus.DRAFT

    @property
    def record_key(self) -> str:
        return self.date


class JournalEntry(BaseModel):
    """A free-form journal entry."""

    id: str = Field(default_factory=new_id)
    title: Optional[str] = None
    content: str = ""
    mood: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    is_sensitive: bool = False
    visibility: Literal["private", "shared"] = "private"
    ai_summary: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    decrypt_state: DecryptState = DecryptState.OK

    @field_validator("tags", mode="before")
    @classmethod
    def _clean_tags(cls, value: Any) -> list[str]:
        if not value:
            return []
        return [str(t).strip() for t in value if t and str(t).strip()]

    @property
    def record_key(self) -> str:
        return self.id


class Task(BaseModel):
    """A to-do item."""

    id: str = Field(default_factory=new_id)
    text: str = ""
    completed: bool = False
    created_at: str = Field(default_factory=utc_now_iso)
    decrypt_state: DecryptState = DecryptState.OK

    @property
    def record_key(self) -> str:
        return self.id


class UserSettings(BaseModel):
    """Per-account preferences. Created lazily, only ever merged."""

    ai_provider: Literal["ollama", "gemini"] = "ollama"
    ollama_url: str = DEFAULT_OLLAMA_URL
    ollama_model: str = "llama3.2:1b"
    gemini_api_key: str = ""
    theme: Literal["dark", "light"] = "dark"
    widget_enabled: bool = True
    wake_up_time: str = "07:00"
    wake_up_enabled: bool = False
    evening_wind_down_time: str = "22:00"
    evening_wind_down_enabled: bool = True
    commit_cutoff_time: str = "22:00"
    user_goals: dict[str, Any] = Field(default_factory=dict)


def sanitize_ollama_url(url: Optional[str]) -> str:
    """Return ``url`` if it points at a local Ollama server, else the default.

    Only ``http://`` URLs on loopback hosts with no path, query, or
    fragment are accepted.
    """
    if not url or not url.strip():
        return DEFAULT_OLLAMA_URL
    url = url.strip()
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return DEFAULT_OLLAMA_URL

    if parsed.scheme != "http":
        return DEFAULT_OLLAMA_URL
    if (parsed.hostname or "").lower() not in _LOCAL_HOSTS:
        return DEFAULT_OLLAMA_URL
    if port is not None and not 1 <= port <= 65535:
        return DEFAULT_OLLAMA_URL
    if parsed.path not in ("", "/") or parsed.query or parsed.fragment:
        return DEFAULT_OLLAMA_URL
    return url


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware datetime.

    Bare ``HH:MM`` clock times are read as that time on 1970-01-01 UTC so
    two of them still compare sensibly. Returns None for missing or
    unparseable input.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            clock = time.fromisoformat(text)
        except ValueError:
            return None
        parsed = datetime.combine(datetime(1970, 1, 1).date(), clock)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
