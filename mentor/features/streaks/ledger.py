from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple
from uuid import uuid4

from mentor.core.clock import Clock, truncate_ms
from mentor.core.errors import (
    BankDayNotAllowedError,
    DuplicateEntryError,
    InsufficientBankError,
    ValidationError,
)
from mentor.core.locks import UserLocks
from mentor.core.logging import log_event
from mentor.features.storage import codecs
from mentor.features.storage.local_store import LocalStore
from mentor.models.ledger import (
    ENTITY_BANK_TRANSACTION,
    ENTITY_CHECKIN,
    ENTITY_LEDGER_ENTRY,
    CheckIn,
    LedgerEntry,
    StreakBankTransaction,
    StreakState,
)

logger = logging.getLogger("mentor")


def bank_summary(transactions: Iterable[StreakBankTransaction]) -> Tuple[int, Set[date]]:
    """
    Replay bank transactions into (remaining balance, covered dates).

    Two consumptions of the same date (e.g. from two devices) cover it once
    and are charged once. The balance never goes below zero.
    """
    granted = 0
    covered: Set[date] = set()
    for txn in sorted(transactions, key=lambda t: (t.recorded_at, t.transaction_id)):
        if txn.kind == "grant":
            granted += txn.days
        elif txn.covered_date is not None:
            covered.add(txn.covered_date)
    return max(0, granted - len(covered)), covered


def compute_streaks(
    entries: Dict[date, LedgerEntry],
    covered: Set[date],
    today: date,
    previous_longest: int = 0,
) -> Tuple[int, int]:
    """
    Derive (current, longest) from the entry sequence.

    A day qualifies when it has a completed entry or is bank-covered. The
    backward walk starts at today; an unqualified today does not break it,
    the first unqualified past day does. Entries after today are ignored.
    longest never drops below previous_longest.
    """

    def qualifies(day: date) -> bool:
        entry = entries.get(day)
        return (entry is not None and entry.completed) or day in covered

    current = 0
    cursor = today
    if qualifies(cursor):
        current += 1
    cursor -= timedelta(days=1)
    while qualifies(cursor):
        current += 1
        cursor -= timedelta(days=1)

    qualifying_days = sorted(
        {day for day, entry in entries.items() if entry.completed and day <= today}
        | {day for day in covered if day <= today}
    )
    longest_run = 0
    run = 0
    previous: Optional[date] = None
    for day in qualifying_days:
        run = run + 1 if previous is not None and (day - previous).days == 1 else 1
        longest_run = max(longest_run, run)
        previous = day

    return current, max(previous_longest, longest_run, current)


class StreakLedger:
    """
    Sole writer of ledger entries, bank transactions and check-ins.

    Writes go to the local store only and never wait on the network; entries
    with source=local and no remote_updated_at are picked up by the next
    reconciliation pass.
    """

    def __init__(self, store: LocalStore, clock: Clock, locks: Optional[UserLocks] = None):
        self._store = store
        self._clock = clock
        self._locks = locks or UserLocks()

    @property
    def clock(self) -> Clock:
        return self._clock

    # Reads ------------------------------------------------------------
    def get_entry(self, user_id: str, day: date) -> Optional[LedgerEntry]:
        row = self._store.get(user_id, ENTITY_LEDGER_ENTRY, day.isoformat())
        return codecs.entry_from_local(row) if row else None

    def entries(self, user_id: str, start: Optional[date] = None, end: Optional[date] = None) -> List[LedgerEntry]:
        rows = self._store.query(user_id, ENTITY_LEDGER_ENTRY, start, end)
        return sorted((codecs.entry_from_local(row) for row in rows), key=lambda e: e.date)

    def bank_transactions(self, user_id: str) -> List[StreakBankTransaction]:
        rows = self._store.query(user_id, ENTITY_BANK_TRANSACTION)
        return sorted((codecs.bank_from_local(row) for row in rows), key=lambda t: (t.recorded_at, t.transaction_id))

    def checkins(self, user_id: str, start: Optional[date] = None, end: Optional[date] = None) -> List[CheckIn]:
        rows = self._store.query(user_id, ENTITY_CHECKIN, start, end)
        return [codecs.checkin_from_local(row) for row in rows]

    def bank_balance(self, user_id: str) -> int:
        balance, _ = bank_summary(self.bank_transactions(user_id))
        return balance

    # Entry writes -----------------------------------------------------
    def record_completion(
        self,
        user_id: str,
        day: date,
        challenge_ref: Optional[str] = None,
        effort_level: Optional[int] = None,
        *,
        recorded_at: Optional[datetime] = None,
        note: Optional[str] = None,
    ) -> LedgerEntry:
        self._check_effort(effort_level)
        candidate = LedgerEntry(
            user_id=user_id,
            date=day,
            completed=True,
            challenge_ref=challenge_ref,
            effort_level=effort_level,
            note=note,
            recorded_at=truncate_ms(recorded_at or self._clock.now()),
            source="local",
        )
        return self._write_entry(candidate)

    def record_skip(
        self,
        user_id: str,
        day: date,
        reason: str,
        *,
        recorded_at: Optional[datetime] = None,
    ) -> LedgerEntry:
        if not reason or not reason.strip():
            raise ValidationError("A skip needs a reason")
        candidate = LedgerEntry(
            user_id=user_id,
            date=day,
            completed=False,
            skip_reason=reason.strip(),
            recorded_at=truncate_ms(recorded_at or self._clock.now()),
            source="local",
        )
        return self._write_entry(candidate)

    def _write_entry(self, candidate: LedgerEntry) -> LedgerEntry:
        user_id = candidate.user_id
        if candidate.date > self._clock.today(user_id):
            raise ValidationError(f"Cannot record {candidate.date.isoformat()}: it is after the user's today")

        with self._locks.for_user(user_id), self._store.transaction(user_id):
            existing = self.get_entry(user_id, candidate.date)
            if existing is not None:
                if existing.same_payload(candidate):
                    log_event("info", "ledger.retry_ignored", user_id=user_id, event_type="ledger_entry", extra={"date": candidate.key})
                    return existing
                if existing.source == "local" and existing.recorded_at >= candidate.recorded_at:
                    raise DuplicateEntryError(
                        f"Entry for {candidate.key} already recorded at {existing.recorded_at.isoformat()}",
                        existing=existing,
                    )
                log_event(
                    "info",
                    "ledger.entry_superseded",
                    user_id=user_id,
                    event_type="ledger_entry",
                    extra={"date": candidate.key, "previous_source": existing.source, "completed": candidate.completed},
                )
            self._put_entry(candidate)
        log_event("info", "ledger.entry_recorded", user_id=user_id, event_type="ledger_entry", extra={"date": candidate.key, "completed": candidate.completed})
        return candidate

    @staticmethod
    def _check_effort(effort_level: Optional[int]) -> None:
        if effort_level is not None and not 1 <= effort_level <= 5:
            raise ValidationError(f"effort_level must be between 1 and 5, got {effort_level}")

    # Bank days ----------------------------------------------------------
    def consume_bank_day(self, user_id: str, day: date, *, reason: str = "manual") -> StreakBankTransaction:
        with self._locks.for_user(user_id), self._store.transaction(user_id):
            today = self._clock.today(user_id)
            if day >= today:
                raise BankDayNotAllowedError(f"Bank days only cover past days; {day.isoformat()} is not before {today.isoformat()}")
            entry = self.get_entry(user_id, day)
            if entry is not None and entry.completed:
                raise BankDayNotAllowedError(f"{day.isoformat()} already has a completion")
            balance, covered = bank_summary(self.bank_transactions(user_id))
            if day in covered:
                raise BankDayNotAllowedError(f"{day.isoformat()} is already covered by a bank day")
            if balance <= 0:
                raise InsufficientBankError("No streak bank days left")

            txn = StreakBankTransaction(
                transaction_id=str(uuid4()),
                user_id=user_id,
                kind="consume",
                covered_date=day,
                reason=reason,
                recorded_at=truncate_ms(self._clock.now()),
            )
            self._put_bank(txn)
        log_event("info", "ledger.bank_day_consumed", user_id=user_id, event_type="bank_transaction", extra={"date": day.isoformat(), "reason": reason, "remaining": balance - 1})
        return txn

    def grant_bank_days(self, user_id: str, days: int, reason: str) -> StreakBankTransaction:
        if days < 1:
            raise ValidationError("Grant at least one bank day")
        txn = StreakBankTransaction(
            transaction_id=str(uuid4()),
            user_id=user_id,
            kind="grant",
            days=days,
            reason=reason,
            recorded_at=truncate_ms(self._clock.now()),
        )
        with self._locks.for_user(user_id), self._store.transaction(user_id):
            self._put_bank(txn)
        log_event("info", "ledger.bank_days_granted", user_id=user_id, event_type="bank_transaction", extra={"days": days, "reason": reason})
        return txn

    # Check-ins ----------------------------------------------------------
    def record_checkin(
        self,
        user_id: str,
        day: date,
        time_of_day: str,
        *,
        mood: Optional[str] = None,
        effort_level: Optional[int] = None,
        has_response: bool = False,
        recorded_at: Optional[datetime] = None,
    ) -> CheckIn:
        self._check_effort(effort_level)
        try:
            checkin = CheckIn(
                user_id=user_id,
                date=day,
                time_of_day=time_of_day,
                mood=mood,
                effort_level=effort_level,
                has_response=has_response,
                recorded_at=truncate_ms(recorded_at or self._clock.now()),
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        with self._locks.for_user(user_id), self._store.transaction(user_id):
            self._put_checkin(checkin)
        return checkin

    # Merged writes (reconciliation) -------------------------------------
    def apply_merged(
        self,
        user_id: str,
        entries: Iterable[LedgerEntry] = (),
        transactions: Iterable[StreakBankTransaction] = (),
        checkins: Iterable[CheckIn] = (),
    ) -> None:
        """Store already-resolved records; the caller owns the transaction."""
        with self._locks.for_user(user_id):
            for entry in entries:
                self._put_entry(entry)
            for txn in transactions:
                self._put_bank(txn)
            for checkin in checkins:
                self._put_checkin(checkin)

    def _put_entry(self, entry: LedgerEntry) -> None:
        self._store.put(entry.user_id, ENTITY_LEDGER_ENTRY, entry.key, codecs.to_local_row(entry), entry.date)

    def _put_bank(self, txn: StreakBankTransaction) -> None:
        self._store.put(txn.user_id, ENTITY_BANK_TRANSACTION, txn.key, codecs.to_local_row(txn), txn.covered_date)

    def _put_checkin(self, checkin: CheckIn) -> None:
        self._store.put(checkin.user_id, ENTITY_CHECKIN, checkin.key, codecs.to_local_row(checkin), checkin.date)

    # Derivation ---------------------------------------------------------
    def recompute(self, user_id: str, previous: Optional[StreakState] = None, today: Optional[date] = None) -> StreakState:
        """Pure over the stored entries and bank transactions; does not persist."""
        day = today or self._clock.today(user_id)
        entries = {entry.date: entry for entry in self.entries(user_id)}
        balance, covered = bank_summary(self.bank_transactions(user_id))
        future = [d for d in entries if d > day]
        if future:
            log_event("warning", "ledger.future_entries_ignored", user_id=user_id, error_code="clock_skew", extra={"dates": [d.isoformat() for d in future]})
        current, longest = compute_streaks(
            entries,
            covered,
            day,
            previous_longest=previous.longest_streak if previous else 0,
        )
        return StreakState(
            user_id=user_id,
            current_streak=current,
            longest_streak=longest,
            last_computed_date=day,
            streak_bank_days=balance,
            computed_at=truncate_ms(self._clock.now()),
        )
