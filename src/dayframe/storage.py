"""
Local persistent store — the device-side key/JSON-blob store.

Everything the sync core keeps between runs (record collections, the
retry queue, encryption salts and flags) goes through this narrow
interface: ``get``, ``set``, ``remove``. Values are anything
``json.dumps`` accepts.

Storage layout (JsonFileStore):
    ~/.dayframe/data/
    ├── journal_entries_v1.json
    ├── schedule_commits_v1.json
    ├── tasks_v1.json
    ├── user_settings_v1.json
    ├── sync_queue.json
    └── encryption_salt_<user>.json
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Optional, Protocol

from .errors import StorageQuotaExceeded

logger = logging.getLogger("dayframe.storage")

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class LocalStore(Protocol):
    """Synchronous key -> JSON value store."""

    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStore:
    """In-process store. Useful for tests and ephemeral sessions.

    Args:
        quota_bytes: Optional cap on the total serialized size of all
            values. Writes past it raise StorageQuotaExceeded.
    """

    def __init__(self, quota_bytes: Optional[int] = None) -> None:
        self._data: dict[str, str] = {}
        self.quota_bytes = quota_bytes

    def get(self, key: str) -> Any:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        raw = json.dumps(value)
        if self.quota_bytes is not None:
            used = sum(len(v) for k, v in self._data.items() if k != key)
            if used + len(raw) > self.quota_bytes:
                raise StorageQuotaExceeded(
                    f"Writing {key!r} ({len(raw)} bytes) exceeds quota of "
                    f"{self.quota_bytes} bytes"
                )
        self._data[key] = raw

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class JsonFileStore:
    """One JSON file per key under a directory.

    Writes go to a temp file first and are moved into place, so a crash
    mid-write never leaves a truncated blob behind.

    Args:
        root: Directory holding the blobs (created on demand).
        quota_bytes: Optional cap on the total size of all blobs.
    """

    def __init__(self, root: Path, quota_bytes: Optional[int] = None) -> None:
        self.root = root.expanduser()
        self.quota_bytes = quota_bytes

    def _path(self, key: str) -> Path:
        return self.root / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    def get(self, key: str) -> Any:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Unreadable local blob %s: %s", path.name, exc)
            return None

    def set(self, key: str, value: Any) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        raw = json.dumps(value, indent=2)
        path = self._path(key)

        if self.quota_bytes is not None:
            used = sum(
                f.stat().st_size for f in self.root.glob("*.json") if f != path
            )
            if used + len(raw.encode("utf-8")) > self.quota_bytes:
                raise StorageQuotaExceeded(
                    f"Writing {key!r} exceeds quota of {self.quota_bytes} bytes"
                )

        fd, tmp_name = tempfile.mkstemp(dir=self.root, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(raw)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(p.stem for p in self.root.glob("*.json"))
