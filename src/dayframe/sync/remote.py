"""
Remote relational store -- where the mirror of every record lives.

Table-per-entity upsert/select/delete, scoped by the authenticated
account. The sync core only ever talks to :class:`RemoteStore`; which
concrete store sits behind it is a deployment choice.

MemoryRemoteStore: In-process tables. Tests, demos, offline development.
PostgrestRemoteStore: A PostgREST (Supabase) endpoint over HTTPS.

Tables and upsert conflict keys:
    journal_entries   (user_id, id)
    schedule_commits  (user_id, date)
    tasks             (user_id, id)
    user_settings     (user_id)
"""

from __future__ import annotations

import copy
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import httpx

from ..errors import PermanentRemoteError, RemoteError, TransientRemoteError

logger = logging.getLogger("dayframe.sync.remote")

JOURNAL_TABLE = "journal_entries"
COMMITS_TABLE = "schedule_commits"
TASKS_TABLE = "tasks"
SETTINGS_TABLE = "user_settings"

CONFLICT_KEYS: dict[str, tuple[str, ...]] = {
    JOURNAL_TABLE: ("user_id", "id"),
    COMMITS_TABLE: ("user_id", "date"),
    TASKS_TABLE: ("user_id", "id"),
    SETTINGS_TABLE: ("user_id",),
}

# PostgREST / Postgres codes that will fail the same way on every retry.
# PGRST102: empty or invalid JSON body. 22P02: invalid input syntax.
# PGRST204: unknown column.
_PERMANENT_CODES = {"PGRST102", "PGRST204", "22P02"}
# PGRST301: JWT expired; the next token refresh fixes it.
_TRANSIENT_CODES = {"PGRST301", "PGRST300"}
_PERMANENT_STATUSES = {400, 404, 405, 409, 413, 422}
_PERMANENT_MARKERS = ("invalid json", "invalid input syntax", "violates", "constraint")


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


def remote_error(
    message: str, code: Optional[str] = None, status: Optional[int] = None
) -> RemoteError:
    """Build the right RemoteError subclass for a backend failure."""
    lowered = message.lower()
    if code in _TRANSIENT_CODES:
        return TransientRemoteError(message, code=code, status=status)
    if (
        code in _PERMANENT_CODES
        or (code is not None and code[:2] in ("22", "23"))
        or status in _PERMANENT_STATUSES
        or any(marker in lowered for marker in _PERMANENT_MARKERS)
    ):
        return PermanentRemoteError(message, code=code, status=status)
    return TransientRemoteError(message, code=code, status=status)


def classify_error(exc: BaseException) -> ErrorKind:
    """Decide whether a failed push is worth retrying.

    Permanent: malformed payloads and constraint violations, plus local
    validation errors (a bad record will be just as bad next time).
    Transient: everything else, most importantly network failures,
    timeouts, and expired tokens.
    """
    if isinstance(exc, PermanentRemoteError):
        return ErrorKind.PERMANENT
    if isinstance(exc, RemoteError):
        return ErrorKind.TRANSIENT
    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return ErrorKind.PERMANENT
    return ErrorKind.TRANSIENT


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RemoteStore(ABC):
    """Abstract remote store scoped to one authenticated account."""

    @property
    def configured(self) -> bool:
        """Whether the store has enough configuration to be reachable."""
        return True

    def set_session(self, user_id: Optional[str], access_token: Optional[str] = None) -> None:
        """Adopt the account session handed over by the auth collaborator."""

    @abstractmethod
    async def current_user(self) -> Optional[str]:
        """Return the authenticated account id, or None."""

    @abstractmethod
    async def upsert(
        self, table: str, row: dict[str, Any], on_conflict: tuple[str, ...]
    ) -> None:
        """Insert or replace one row, matching on ``on_conflict`` columns."""

    @abstractmethod
    async def select(
        self,
        table: str,
        user_id: str,
        order_by: Optional[str] = None,
        descending: bool = True,
    ) -> list[dict[str, Any]]:
        """Return every row of ``table`` owned by ``user_id``."""

    @abstractmethod
    async def select_one(self, table: str, user_id: str) -> Optional[dict[str, Any]]:
        """Return the single row of ``table`` owned by ``user_id``, if any."""

    @abstractmethod
    async def delete(self, table: str, match: dict[str, Any]) -> None:
        """Delete every row whose columns equal ``match``. Idempotent."""

    async def close(self) -> None:
        """Release network resources."""


class MemoryRemoteStore(RemoteStore):
    """In-process remote store with connectivity and failure injection.

    Args:
        user_id: Authenticated account, or None for signed-out.
    """

    def __init__(self, user_id: Optional[str] = None) -> None:
        self.user_id = user_id
        self.online = True
        self.tables: dict[str, dict[tuple, dict[str, Any]]] = {
            name: {} for name in CONFLICT_KEYS
        }
        self.calls: list[tuple[str, str]] = []
        self._failures: list[BaseException] = []

    def set_session(self, user_id: Optional[str], access_token: Optional[str] = None) -> None:
        self.user_id = user_id

    def fail_next(self, exc: BaseException, times: int = 1) -> None:
        """Make the next ``times`` data calls raise ``exc``."""
        self._failures.extend([exc] * times)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(r) for r in self.tables[table].values()]

    def _check(self, op: str, table: str) -> None:
        self.calls.append((op, table))
        if not self.online:
            raise TransientRemoteError("network unreachable: fetch failed")
        if self._failures:
            raise self._failures.pop(0)
        if table not in self.tables:
            raise PermanentRemoteError(
                f"relation {table!r} does not exist", code="42P01", status=404
            )

    async def current_user(self) -> Optional[str]:
        return self.user_id

    async def upsert(
        self, table: str, row: dict[str, Any], on_conflict: tuple[str, ...]
    ) -> None:
        self._check("upsert", table)
        missing = [col for col in on_conflict if row.get(col) in (None, "")]
        if missing:
            raise PermanentRemoteError(
                f"null value in column {missing[0]!r} violates not-null constraint",
                code="23502",
            )
        key = tuple(row[col] for col in on_conflict)
        stored = dict(self.tables[table].get(key, {}))
        stored.update(copy.deepcopy(row))
        stored["updated_at"] = _utc_now()
        self.tables[table][key] = stored

    async def select(
        self,
        table: str,
        user_id: str,
        order_by: Optional[str] = None,
        descending: bool = True,
    ) -> list[dict[str, Any]]:
        self._check("select", table)
        rows = [
            copy.deepcopy(r)
            for r in self.tables[table].values()
            if r.get("user_id") == user_id
        ]
        if order_by:
            rows.sort(key=lambda r: str(r.get(order_by) or ""), reverse=descending)
        return rows

    async def select_one(self, table: str, user_id: str) -> Optional[dict[str, Any]]:
        rows = await self.select(table, user_id)
        return rows[0] if rows else None

    async def delete(self, table: str, match: dict[str, Any]) -> None:
        self._check("delete", table)
        doomed = [
            key
            for key, row in self.tables[table].items()
            if all(row.get(col) == value for col, value in match.items())
        ]
        for key in doomed:
            del self.tables[table][key]


class PostgrestRemoteStore(RemoteStore):
    """Remote store backed by a PostgREST endpoint (e.g. Supabase).

    The auth collaborator hands over the session with :meth:`set_session`;
    row-level security on the server does the rest.

    Args:
        url: Project base URL (``https://<project>.supabase.co``).
        api_key: Public anon key. Defaults to ``$DAYFRAME_REMOTE_KEY``.
        timeout: Per-request network timeout in seconds.
    """

    def __init__(
        self,
        url: Optional[str],
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        key_env: str = "DAYFRAME_REMOTE_KEY",
    ) -> None:
        self.url = (url or "").rstrip("/")
        self.api_key = api_key or os.environ.get(key_env, "")
        self.timeout = timeout
        self._user_id: Optional[str] = None
        self._access_token: Optional[str] = None
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def configured(self) -> bool:
        return bool(self.url and self.api_key)

    def set_session(self, user_id: Optional[str], access_token: Optional[str] = None) -> None:
        self._user_id = user_id
        self._access_token = access_token
        if self._client is not None:
            self._client.headers["Authorization"] = f"Bearer {self._bearer()}"

    def _bearer(self) -> str:
        return self._access_token or self.api_key

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.url}/rest/v1",
                headers={
                    "apikey": self.api_key,
                    "Authorization": f"Bearer {self._bearer()}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[dict[str, str]] = None,
        json_body: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        client = await self._get_client()
        headers = {"Prefer": prefer} if prefer else None
        try:
            resp = await client.request(
                method, f"/{table}", params=params, json=json_body, headers=headers
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise self._error_from_response(exc.response) from exc
        except httpx.TimeoutException as exc:
            raise TransientRemoteError(f"network timeout: {exc}") from exc
        except httpx.RequestError as exc:
            raise TransientRemoteError(f"network error: {exc}") from exc

        if not resp.content:
            return None
        return resp.json()

    @staticmethod
    def _error_from_response(resp: httpx.Response) -> RemoteError:
        code = None
        message = resp.text or resp.reason_phrase
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = body.get("code")
            message = body.get("message") or message
        return remote_error(str(message), code=code, status=resp.status_code)

    async def current_user(self) -> Optional[str]:
        return self._user_id

    async def upsert(
        self, table: str, row: dict[str, Any], on_conflict: tuple[str, ...]
    ) -> None:
        await self._request(
            "POST",
            table,
            params={"on_conflict": ",".join(on_conflict)},
            json_body=row,
            prefer="resolution=merge-duplicates,return=minimal",
        )

    async def select(
        self,
        table: str,
        user_id: str,
        order_by: Optional[str] = None,
        descending: bool = True,
    ) -> list[dict[str, Any]]:
        params = {"select": "*", "user_id": f"eq.{user_id}"}
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        return await self._request("GET", table, params=params) or []

    async def select_one(self, table: str, user_id: str) -> Optional[dict[str, Any]]:
        params = {"select": "*", "user_id": f"eq.{user_id}", "limit": "1"}
        rows = await self._request("GET", table, params=params) or []
        return rows[0] if rows else None

    async def delete(self, table: str, match: dict[str, Any]) -> None:
        params = {col: f"eq.{value}" for col, value in match.items()}
        await self._request("DELETE", table, params=params, prefer="return=minimal")
