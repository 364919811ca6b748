"""
mentor/features/storage/remote_store.py

Remote (hosted, row-level-security scoped) store.

- HttpRemoteStore talks to PostgREST-style endpoints with httpx.
- InMemoryRemoteStore reproduces the hosted behaviour for tests and offline
  development, including the server-side streak-zero-on-miss trigger that
  runs outside the client's control.

Both return plain rows; mentor.features.storage.codecs maps them to models.
"""
from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from mentor.core.clock import Clock
from mentor.core.config import settings
from mentor.core.errors import RemoteRejectedError, SyncTransientError
from mentor.features.storage.codecs import format_ts, parse_day, parse_ts
from mentor.models.ledger import (
    ENTITY_BANK_TRANSACTION,
    ENTITY_CHECKIN,
    ENTITY_LEDGER_ENTRY,
    ENTITY_STREAK_STATE,
)

# entity_type -> (table, natural key columns)
REMOTE_TABLES: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    ENTITY_LEDGER_ENTRY: ("daily_challenges", ("user_id", "date")),
    ENTITY_BANK_TRANSACTION: ("streak_bank_transactions", ("id",)),
    ENTITY_CHECKIN: ("ai_checkins", ("user_id", "date", "time_of_day")),
    ENTITY_STREAK_STATE: ("user_profiles", ("user_id",)),
}


@dataclass
class RemoteBatch:
    records: List[Dict[str, Any]] = field(default_factory=list)
    server_time: Optional[datetime] = None


class RemoteStore(Protocol):
    async def fetch_since(self, user_id: str, entity_type: str, cursor: Optional[datetime]) -> RemoteBatch:
        """Rows for user_id with updated_at >= cursor, ordered by updated_at."""
        ...

    async def upsert(self, user_id: str, entity_type: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Insert or merge rows by natural key; returns the stored rows with updated_at."""
        ...


def _table_for(entity_type: str) -> Tuple[str, Tuple[str, ...]]:
    try:
        return REMOTE_TABLES[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type}")


class HttpRemoteStore:
    """PostgREST client. One short-lived AsyncClient per call, bounded by timeout."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        url = base_url or settings.REMOTE_URL
        if not url:
            raise ValueError("REMOTE_URL is not configured")
        self._base_url = url.rstrip("/")
        self._api_key = api_key or settings.REMOTE_API_KEY or ""
        self._access_token = access_token
        self._timeout = timeout if timeout is not None else settings.REMOTE_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._access_token or self._api_key}",
            "Content-Type": "application/json",
        }
        return headers

    async def _request(self, method: str, table: str, *, params: Dict[str, str], json: Any = None, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        url = f"{self._base_url}/rest/v1/{table}"
        merged = self._headers()
        if headers:
            merged.update(headers)
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(method, url, params=params, json=json, headers=merged)
        except httpx.TimeoutException as exc:
            raise SyncTransientError(f"Remote request timed out: {table}") from exc
        except httpx.TransportError as exc:
            raise SyncTransientError(f"Remote unreachable: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise SyncTransientError(f"Remote error {response.status_code} on {table}")
        if response.status_code >= 400:
            raise RemoteRejectedError(f"Remote rejected {method} {table}: {response.status_code} {response.text[:200]}")
        return response

    @staticmethod
    def _server_time(response: httpx.Response) -> Optional[datetime]:
        raw = response.headers.get("date")
        if not raw:
            return None
        try:
            return parsedate_to_datetime(raw).astimezone(timezone.utc)
        except (TypeError, ValueError):
            return None

    async def fetch_since(self, user_id: str, entity_type: str, cursor: Optional[datetime]) -> RemoteBatch:
        table, _ = _table_for(entity_type)
        params = {
            "select": "*",
            "user_id": f"eq.{user_id}",
            "order": "updated_at.asc",
        }
        if cursor is not None:
            params["updated_at"] = f"gte.{format_ts(cursor)}"
        response = await self._request("GET", table, params=params)
        return RemoteBatch(records=list(response.json() or []), server_time=self._server_time(response))

    async def upsert(self, user_id: str, entity_type: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not rows:
            return []
        table, key_columns = _table_for(entity_type)
        for row in rows:
            if row.get("user_id") != user_id:
                raise RemoteRejectedError(f"Row for {row.get('user_id')} rejected for session user {user_id}")
        response = await self._request(
            "POST",
            table,
            params={"on_conflict": ",".join(key_columns)},
            json=rows,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        return list(response.json() or [])


class InMemoryRemoteStore:
    """
    Hosted backend stand-in.

    updated_at is assigned by the server clock and strictly increases, so
    cursors behave like they do against the real service. Failure injection
    (offline, fail_next, delay) drives the sync error paths in tests.
    """

    def __init__(self, clock: Clock, skew: timedelta = timedelta(0)):
        self._clock = clock
        self._skew = skew
        self._tables: Dict[str, Dict[Tuple[Any, ...], Dict[str, Any]]] = {etype: {} for etype in REMOTE_TABLES}
        self._last_stamp: Optional[datetime] = None
        self.online = True
        self.delay_seconds = 0.0
        self._failures: List[Tuple[Optional[str], Exception]] = []
        self.calls: List[Tuple[str, str]] = []

    # Failure injection -------------------------------------------------
    def fail_next(self, count: int = 1, exc: Optional[Exception] = None, op: Optional[str] = None) -> None:
        """Fail the next count calls, or only the next count "fetch"/"upsert" calls when op is given."""
        for _ in range(count):
            self._failures.append((op, exc or SyncTransientError("Injected remote failure")))

    async def _gate(self, op: str, entity_type: str) -> None:
        self.calls.append((op, entity_type))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if not self.online:
            raise SyncTransientError("Remote unreachable (offline)")
        if self._failures and self._failures[0][0] in (None, op):
            raise self._failures.pop(0)[1]

    # Server clock --------------------------------------------------------
    def server_now(self) -> datetime:
        return self._clock.now() + self._skew

    def _stamp(self) -> datetime:
        now = parse_ts(self.server_now())
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(milliseconds=1)
        self._last_stamp = now
        return now

    # RemoteStore ---------------------------------------------------------
    async def fetch_since(self, user_id: str, entity_type: str, cursor: Optional[datetime]) -> RemoteBatch:
        _table_for(entity_type)
        await self._gate("fetch", entity_type)
        rows = [
            copy.deepcopy(row)
            for row in self._tables[entity_type].values()
            if row["user_id"] == user_id and (cursor is None or parse_ts(row["updated_at"]) >= cursor)
        ]
        rows.sort(key=lambda row: row["updated_at"])
        return RemoteBatch(records=rows, server_time=self.server_now())

    async def upsert(self, user_id: str, entity_type: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        _, key_columns = _table_for(entity_type)
        await self._gate("upsert", entity_type)
        stored = []
        for row in rows:
            if row.get("user_id") != user_id:
                raise RemoteRejectedError(f"Row for {row.get('user_id')} rejected for session user {user_id}")
            key = tuple(row[col] for col in key_columns)
            old = self._tables[entity_type].get(key)
            new = dict(old or {})
            new.update(copy.deepcopy(row))
            new["updated_at"] = format_ts(self._stamp())
            self._tables[entity_type][key] = new
            if entity_type == ENTITY_LEDGER_ENTRY:
                self._check_streak_break(old, new)
            stored.append(copy.deepcopy(new))
        return stored

    # Server-side triggers -----------------------------------------------
    def _check_streak_break(self, old: Optional[Dict[str, Any]], new: Dict[str, Any]) -> None:
        """Zero the stored counter when a day is un-completed or recorded incomplete in the past."""
        server_today = self.server_now().date()
        uncompleted = bool(old and old.get("is_completed")) and not new.get("is_completed")
        past_incomplete = parse_day(new["date"]) < server_today and not new.get("is_completed")
        if uncompleted or past_incomplete:
            self.set_profile_counters(new["user_id"], current_streak=0)

    def set_profile_counters(self, user_id: str, **counters: int) -> Dict[str, Any]:
        profiles = self._tables[ENTITY_STREAK_STATE]
        profile = profiles.get((user_id,)) or {
            "user_id": user_id,
            "current_streak": 0,
            "longest_streak": 0,
            "streak_bank_days": 0,
        }
        profile.update(counters)
        profile["updated_at"] = format_ts(self._stamp())
        profiles[(user_id,)] = profile
        return copy.deepcopy(profile)

    # Inspection helpers --------------------------------------------------
    def rows(self, entity_type: str, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(row)
            for row in self._tables[entity_type].values()
            if user_id is None or row["user_id"] == user_id
        ]

    def profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        row = self._tables[ENTITY_STREAK_STATE].get((user_id,))
        return copy.deepcopy(row) if row else None
