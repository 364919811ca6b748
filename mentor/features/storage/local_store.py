"""
mentor/features/storage/local_store.py

Local (offline-capable) row store for cached entities.

Two implementations share one contract:
- InMemoryLocalStore: tests and offline development
- SqlLocalStore: SQLAlchemy-backed, used when DATABASE_URL is configured

Rows are plain dicts produced by mentor.features.storage.codecs.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import date, datetime, timezone
from typing import Dict, Iterator, List, Optional, Protocol, Tuple

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.orm import Session, sessionmaker

from mentor.core.database import (
    create_all_tables,
    get_database_url,
    get_db_session,
    get_engine,
    local_records,
)


class LocalStore(Protocol):
    """Contract the ledger and the reconciliation engine rely on."""

    def get(self, user_id: str, entity_type: str, key: str) -> Optional[dict]:
        ...

    def put(self, user_id: str, entity_type: str, key: str, record: dict, record_date: Optional[date] = None) -> None:
        ...

    def delete(self, user_id: str, entity_type: str, key: str) -> bool:
        ...

    def query(self, user_id: str, entity_type: str, start: Optional[date] = None, end: Optional[date] = None) -> List[dict]:
        """Rows ordered by (record_date, key); start/end are inclusive."""
        ...

    def transaction(self, user_id: str):
        """All-or-nothing scope for one user's writes."""
        ...


def _in_range(record_date: Optional[date], start: Optional[date], end: Optional[date]) -> bool:
    if start is None and end is None:
        return True
    if record_date is None:
        return False
    if start is not None and record_date < start:
        return False
    if end is not None and record_date > end:
        return False
    return True


class InMemoryLocalStore:
    """Dict-backed store. Transactions snapshot the user's rows and restore on error."""

    def __init__(self):
        # user_id -> {(entity_type, key): (record_date, row)}
        self._rows: Dict[str, Dict[Tuple[str, str], Tuple[Optional[date], dict]]] = {}
        self._lock = threading.RLock()
        self._depth: Dict[str, int] = {}

    def get(self, user_id: str, entity_type: str, key: str) -> Optional[dict]:
        with self._lock:
            item = self._rows.get(user_id, {}).get((entity_type, key))
            return copy.deepcopy(item[1]) if item else None

    def put(self, user_id: str, entity_type: str, key: str, record: dict, record_date: Optional[date] = None) -> None:
        with self._lock:
            self._rows.setdefault(user_id, {})[(entity_type, key)] = (record_date, copy.deepcopy(record))

    def delete(self, user_id: str, entity_type: str, key: str) -> bool:
        with self._lock:
            return self._rows.get(user_id, {}).pop((entity_type, key), None) is not None

    def query(self, user_id: str, entity_type: str, start: Optional[date] = None, end: Optional[date] = None) -> List[dict]:
        with self._lock:
            items = [
                (record_date, key, row)
                for (etype, key), (record_date, row) in self._rows.get(user_id, {}).items()
                if etype == entity_type and _in_range(record_date, start, end)
            ]
        items.sort(key=lambda item: (item[0] or date.min, item[1]))
        return [copy.deepcopy(row) for _, _, row in items]

    @contextmanager
    def transaction(self, user_id: str) -> Iterator[None]:
        with self._lock:
            depth = self._depth.get(user_id, 0)
            snapshot = copy.deepcopy(self._rows.get(user_id, {})) if depth == 0 else None
            self._depth[user_id] = depth + 1
            try:
                yield
            except BaseException:
                if snapshot is not None:
                    self._rows[user_id] = snapshot
                raise
            finally:
                self._depth[user_id] = depth


_active_session: ContextVar[Optional[Session]] = ContextVar("mentor_local_session", default=None)


class SqlLocalStore:
    """
    SQLAlchemy-backed local store over the local_records table.

    Writes outside a transaction() commit immediately; inside one they share
    a single session that commits or rolls back as a unit.
    """

    def __init__(self, engine=None, create_tables: bool = True):
        self._engine = engine or get_engine()
        self._factory = sessionmaker(autocommit=False, autoflush=False, bind=self._engine)
        if create_tables:
            create_all_tables(self._engine)

    @property
    def engine(self):
        return self._engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        active = _active_session.get()
        if active is not None:
            yield active
            return
        with get_db_session(self._factory) as session:
            yield session

    @contextmanager
    def transaction(self, user_id: str) -> Iterator[None]:
        if _active_session.get() is not None:
            yield
            return
        with get_db_session(self._factory) as session:
            token = _active_session.set(session)
            try:
                yield
            finally:
                _active_session.reset(token)

    def get(self, user_id: str, entity_type: str, key: str) -> Optional[dict]:
        with self._session() as session:
            row = session.execute(
                select(local_records.c.payload).where(
                    and_(
                        local_records.c.user_id == user_id,
                        local_records.c.entity_type == entity_type,
                        local_records.c.record_key == key,
                    )
                )
            ).first()
            return dict(row.payload) if row else None

    def put(self, user_id: str, entity_type: str, key: str, record: dict, record_date: Optional[date] = None) -> None:
        now = datetime.now(timezone.utc)
        with self._session() as session:
            where = and_(
                local_records.c.user_id == user_id,
                local_records.c.entity_type == entity_type,
                local_records.c.record_key == key,
            )
            existing = session.execute(select(local_records.c.id).where(where)).first()
            if existing:
                session.execute(
                    update(local_records)
                    .where(local_records.c.id == existing.id)
                    .values(payload=record, record_date=record_date, updated_at=now)
                )
            else:
                session.execute(
                    insert(local_records).values(
                        user_id=user_id,
                        entity_type=entity_type,
                        record_key=key,
                        record_date=record_date,
                        payload=record,
                        updated_at=now,
                    )
                )

    def delete(self, user_id: str, entity_type: str, key: str) -> bool:
        with self._session() as session:
            result = session.execute(
                delete(local_records).where(
                    and_(
                        local_records.c.user_id == user_id,
                        local_records.c.entity_type == entity_type,
                        local_records.c.record_key == key,
                    )
                )
            )
            return (result.rowcount or 0) > 0

    def query(self, user_id: str, entity_type: str, start: Optional[date] = None, end: Optional[date] = None) -> List[dict]:
        filters = [local_records.c.user_id == user_id, local_records.c.entity_type == entity_type]
        if start is not None:
            filters.append(local_records.c.record_date >= start)
        if end is not None:
            filters.append(local_records.c.record_date <= end)
        with self._session() as session:
            rows = session.execute(
                select(local_records.c.payload)
                .where(and_(*filters))
                .order_by(local_records.c.record_date, local_records.c.record_key)
            ).fetchall()
            return [dict(row.payload) for row in rows]


def get_local_store() -> LocalStore:
    """SQL store when a database URL is configured, in-memory otherwise."""
    if get_database_url():
        return SqlLocalStore()
    return InMemoryLocalStore()
