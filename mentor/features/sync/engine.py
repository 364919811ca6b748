"""
mentor/features/sync/engine.py

Reconciliation of the local ledger with the remote store.

The remote profile counters are never trusted: the server zeroes
current_streak on a miss without knowing about bank days, so the engine
always recomputes from the merged entry set and pushes its own counters
back. The engine is the only writer of StreakState and SyncCursor.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from mentor.core.clock import Clock, truncate_ms
from mentor.core.config import settings
from mentor.core.errors import RemoteRejectedError, SyncTransientError
from mentor.core.locks import UserLocks
from mentor.core.logging import log_event
from mentor.features.storage import codecs
from mentor.features.storage.local_store import LocalStore
from mentor.features.storage.remote_store import RemoteBatch, RemoteStore
from mentor.features.streaks.ledger import StreakLedger, bank_summary
from mentor.features.sync.merge import merge_bank, merge_checkins, merge_entries
from mentor.models.ledger import (
    ENTITY_BANK_TRANSACTION,
    ENTITY_CHECKIN,
    ENTITY_LEDGER_ENTRY,
    ENTITY_STREAK_STATE,
    ENTITY_SYNC_CURSOR,
    SYNCED_ENTITY_TYPES,
    StreakState,
    SyncCursor,
)
from mentor.models.sync import SyncReport

logger = logging.getLogger("mentor")

STATE_KEY = "current"
AUTO_BANK_REASON = "auto_reconcile"

# entity_type -> (remote row decoder, model encoder)
_CODECS: Dict[str, Tuple[Callable, Callable]] = {
    ENTITY_LEDGER_ENTRY: (codecs.entry_from_remote, codecs.entry_to_remote),
    ENTITY_BANK_TRANSACTION: (codecs.bank_from_remote, codecs.bank_to_remote),
    ENTITY_CHECKIN: (codecs.checkin_from_remote, codecs.checkin_to_remote),
}


class ReconciliationEngine:
    def __init__(
        self,
        ledger: StreakLedger,
        store: LocalStore,
        remote: RemoteStore,
        clock: Clock,
        locks: UserLocks,
        *,
        bank_lookback_days: Optional[int] = None,
        skew_tolerance_days: Optional[int] = None,
    ):
        self._ledger = ledger
        self._store = store
        self._remote = remote
        self._clock = clock
        self._locks = locks
        self._bank_lookback_days = bank_lookback_days if bank_lookback_days is not None else settings.BANK_LOOKBACK_DAYS
        self._skew_tolerance_days = skew_tolerance_days if skew_tolerance_days is not None else settings.CLOCK_SKEW_TOLERANCE_DAYS

    @property
    def remote(self) -> RemoteStore:
        return self._remote

    # Cached state -------------------------------------------------------
    def cached_state(self, user_id: str) -> StreakState:
        row = self._store.get(user_id, ENTITY_STREAK_STATE, STATE_KEY)
        return codecs.state_from_local(row) if row else StreakState(user_id=user_id)

    def _save_state(self, state: StreakState) -> None:
        self._store.put(state.user_id, ENTITY_STREAK_STATE, STATE_KEY, codecs.to_local_row(state))

    def commit_local(self, user_id: str) -> StreakState:
        """Recompute from the local ledger and persist the result."""
        with self._locks.for_user(user_id), self._store.transaction(user_id):
            previous = self.cached_state(user_id)
            state = self._ledger.recompute(user_id, previous)
            peak = max(previous.peak_since_sync, previous.current_streak, state.current_streak)
            state = state.model_copy(update={"peak_since_sync": peak})
            self._save_state(state)
        if state.counters() != previous.counters():
            log_event(
                "info",
                "streak.state_updated",
                user_id=user_id,
                event_type="streak_state",
                extra={"current": state.current_streak, "longest": state.longest_streak, "bank": state.streak_bank_days},
            )
        return state

    # Cursors --------------------------------------------------------------
    def get_cursor(self, user_id: str, entity_type: str) -> Optional[datetime]:
        row = self._store.get(user_id, ENTITY_SYNC_CURSOR, entity_type)
        return codecs.cursor_from_local(row).cursor if row else None

    def _advance_cursors(self, user_id: str, cursors: Dict[str, Optional[datetime]]) -> None:
        with self._locks.for_user(user_id), self._store.transaction(user_id):
            for entity_type, value in cursors.items():
                if value is None:
                    continue
                current = self.get_cursor(user_id, entity_type)
                if current is not None and value <= current:
                    continue
                cursor = SyncCursor(user_id=user_id, entity_type=entity_type, cursor=value, updated_at=truncate_ms(self._clock.now()))
                self._store.put(user_id, ENTITY_SYNC_CURSOR, entity_type, codecs.to_local_row(cursor))

    # Reconcile ------------------------------------------------------------
    async def reconcile(self, user_id: str) -> SyncReport:
        report = SyncReport(user_id=user_id)

        batches: Dict[str, RemoteBatch] = {}
        for entity_type in SYNCED_ENTITY_TYPES:
            batches[entity_type] = await self._remote.fetch_since(user_id, entity_type, self.get_cursor(user_id, entity_type))
        profile_batch = await self._remote.fetch_since(user_id, ENTITY_STREAK_STATE, None)
        profile = profile_batch.records[0] if profile_batch.records else None

        decoded = {
            entity_type: [_CODECS[entity_type][0](row) for row in batch.records]
            for entity_type, batch in batches.items()
        }
        report.pulled = sum(len(records) for records in decoded.values())
        report.clock_skew_days = self._check_skew(user_id, batches[ENTITY_LEDGER_ENTRY].server_time or profile_batch.server_time)

        report.state = self._commit_merge(user_id, decoded, profile, report)

        try:
            await self._push(user_id, report, profile)
        except (SyncTransientError, RemoteRejectedError) as exc:
            self._advance_cursors(user_id, self._safe_cursors(user_id, decoded))
            log_event(
                "warning",
                "sync.push_failed",
                user_id=user_id,
                event_type="sync",
                error_code=exc.code,
                extra={"pulled": report.pulled, "error": exc.message},
            )
            raise

        self._advance_cursors(user_id, {etype: _max_stamp(records) for etype, records in decoded.items()})
        log_event(
            "info",
            "sync.reconciled",
            user_id=user_id,
            event_type="sync",
            extra={
                "pulled": report.pulled,
                "pushed": report.pushed,
                "adopted_remote": report.adopted_remote,
                "bank_days_applied": [d.isoformat() for d in report.bank_days_applied],
                "current": report.state.current_streak,
            },
        )
        return report

    def _commit_merge(self, user_id: str, decoded: Dict[str, list], profile: Optional[dict], report: SyncReport) -> StreakState:
        with self._locks.for_user(user_id), self._store.transaction(user_id):
            entries = merge_entries({e.date: e for e in self._ledger.entries(user_id)}, decoded[ENTITY_LEDGER_ENTRY])
            bank = merge_bank({t.transaction_id: t for t in self._ledger.bank_transactions(user_id)}, decoded[ENTITY_BANK_TRANSACTION])
            checkins = merge_checkins({c.key: c for c in self._ledger.checkins(user_id)}, decoded[ENTITY_CHECKIN])
            self._ledger.apply_merged(user_id, entries.adopted, bank.adopted, checkins.adopted)

            report.adopted_remote = sum(
                1 for record in (*entries.adopted, *bank.adopted, *checkins.adopted) if record.source == "remote"
            )
            report.resolved_ties = entries.resolved_ties
            for tie in entries.resolved_ties:
                log_event("info", "sync.tie_resolved", user_id=user_id, event_type="ledger_entry", extra={"key": tie})

            previous = self.cached_state(user_id)
            baseline = max(previous.current_streak, previous.peak_since_sync)
            state = self._ledger.recompute(user_id, previous)
            if state.current_streak < baseline:
                report.bank_days_applied = self._protect_streak(user_id, state.streak_bank_days)
                if report.bank_days_applied:
                    state = self._ledger.recompute(user_id, previous)
            state = state.model_copy(update={"peak_since_sync": state.current_streak})

            remote = codecs.remote_counters(profile)
            if remote is not None and remote[0] != state.current_streak:
                report.remote_counter_discarded = True
                log_event(
                    "warning",
                    "sync.remote_counter_discarded",
                    user_id=user_id,
                    event_type="streak_state",
                    extra={"remote_current": remote[0], "recomputed_current": state.current_streak},
                )
            self._save_state(state)
        return state

    def _protect_streak(self, user_id: str, balance: int) -> List[date]:
        """
        Cover the missed past days below the run that was cached before the drop.

        Called only when the recomputed streak fell under the cached one. The
        run since the miss may be empty (today not yet completed). The whole gap
        must fit the balance and the lookback window, and it must end at an
        earlier qualifying day. Skips are never covered.
        """
        if balance <= 0:
            return []
        today = self._clock.today(user_id)
        entries = {e.date: e for e in self._ledger.entries(user_id, end=today)}
        _, covered = bank_summary(self._ledger.bank_transactions(user_id))

        def qualifies(day: date) -> bool:
            entry = entries.get(day)
            return (entry is not None and entry.completed) or day in covered

        cursor = today if qualifies(today) else today - timedelta(days=1)
        while qualifies(cursor):
            cursor -= timedelta(days=1)

        earliest = min(
            [day for day, entry in entries.items() if entry.completed] + list(covered),
            default=cursor,
        )
        gap: List[date] = []
        while not qualifies(cursor):
            if (today - cursor).days > self._bank_lookback_days or len(gap) >= balance:
                return []
            entry = entries.get(cursor)
            if entry is not None and entry.skip_reason:
                return []
            gap.append(cursor)
            cursor -= timedelta(days=1)
            if cursor < earliest:
                return []

        applied = sorted(gap)
        for day in applied:
            self._ledger.consume_bank_day(user_id, day, reason=AUTO_BANK_REASON)
        log_event(
            "info",
            "sync.bank_days_applied",
            user_id=user_id,
            event_type="bank_transaction",
            extra={"dates": [d.isoformat() for d in applied]},
        )
        return applied

    async def _push(self, user_id: str, report: SyncReport, profile: Optional[dict]) -> None:
        pending = {
            ENTITY_LEDGER_ENTRY: [e for e in self._ledger.entries(user_id) if e.pending_push],
            ENTITY_BANK_TRANSACTION: [t for t in self._ledger.bank_transactions(user_id) if t.pending_push],
            ENTITY_CHECKIN: [c for c in self._ledger.checkins(user_id) if c.pending_push],
        }
        for entity_type, records in pending.items():
            if not records:
                continue
            decode, encode = _CODECS[entity_type]
            stored = await self._remote.upsert(user_id, entity_type, [encode(record) for record in records])
            self._mark_pushed(user_id, entity_type, records, [decode(row) for row in stored])
            report.pushed += len(records)

        state = report.state
        if pending[ENTITY_LEDGER_ENTRY] or codecs.remote_counters(profile) != state.counters():
            await self._remote.upsert(user_id, ENTITY_STREAK_STATE, [codecs.state_to_remote(state)])

    def _mark_pushed(self, user_id: str, entity_type: str, sent: Iterable, stored: Iterable) -> None:
        stamps = {record.key: record.remote_updated_at for record in stored}
        with self._locks.for_user(user_id), self._store.transaction(user_id):
            current = {record.key: record for record in self._current(user_id, entity_type)}
            marked = []
            for record in sent:
                # A write that landed while the push was in flight stays pending.
                if current.get(record.key) != record or stamps.get(record.key) is None:
                    continue
                marked.append(record.model_copy(update={"remote_updated_at": stamps[record.key]}))
            if entity_type == ENTITY_LEDGER_ENTRY:
                self._ledger.apply_merged(user_id, entries=marked)
            elif entity_type == ENTITY_BANK_TRANSACTION:
                self._ledger.apply_merged(user_id, transactions=marked)
            else:
                self._ledger.apply_merged(user_id, checkins=marked)

    def _current(self, user_id: str, entity_type: str) -> list:
        if entity_type == ENTITY_LEDGER_ENTRY:
            return self._ledger.entries(user_id)
        if entity_type == ENTITY_BANK_TRANSACTION:
            return self._ledger.bank_transactions(user_id)
        return self._ledger.checkins(user_id)

    def _safe_cursors(self, user_id: str, decoded: Dict[str, list]) -> Dict[str, Optional[datetime]]:
        """Cursor positions that never skip a pulled row whose key still has an unpushed local write."""
        cursors: Dict[str, Optional[datetime]] = {}
        for entity_type, records in decoded.items():
            pending_keys = {record.key for record in self._current(user_id, entity_type) if record.pending_push}
            blocked = [r.remote_updated_at for r in records if r.key in pending_keys and r.remote_updated_at]
            latest = _max_stamp(records)
            cursors[entity_type] = min([latest, *blocked]) if blocked and latest else latest
        return cursors

    def _check_skew(self, user_id: str, server_time: Optional[datetime]) -> Optional[int]:
        if server_time is None:
            return None
        local_now = self._clock.local_now(user_id)
        server_day = server_time.astimezone(local_now.tzinfo).date()
        drift = (local_now.date() - server_day).days
        if abs(drift) <= self._skew_tolerance_days:
            return None
        log_event(
            "warning",
            "sync.clock_skew",
            user_id=user_id,
            event_type="sync",
            error_code="clock_skew",
            extra={"local_date": local_now.date().isoformat(), "server_date": server_day.isoformat(), "drift_days": drift},
        )
        return drift


def _max_stamp(records: Iterable) -> Optional[datetime]:
    stamps = [record.remote_updated_at for record in records if record.remote_updated_at is not None]
    return max(stamps) if stamps else None
