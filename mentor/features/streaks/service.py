from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import List, Optional, Union

from mentor.core.clock import Clock, SystemClock, truncate_ms
from mentor.core.config import settings
from mentor.core.errors import ValidationError
from mentor.core.locks import UserLocks
from mentor.core.logging import log_event
from mentor.features.progress import projector
from mentor.features.storage.local_store import LocalStore, get_local_store
from mentor.features.storage.remote_store import HttpRemoteStore, InMemoryRemoteStore, RemoteStore
from mentor.features.streaks.ledger import StreakLedger, bank_summary
from mentor.features.sync.coordinator import SyncCoordinator
from mentor.features.sync.engine import ReconciliationEngine
from mentor.models.ledger import CheckIn, LedgerEntry, StreakBankTransaction, StreakState
from mentor.models.progress import ProjectionKind, ProjectionResult
from mentor.models.sync import SyncStatus

logger = logging.getLogger("mentor")

MOOD_WINDOW_DAYS = 14


class StreakService:
    """
    Entry point for streak operations.

    Every mutation writes the ledger and persists the recomputed state inside
    one local transaction under the user's lock, so a failed write never
    leaves a half-updated streak behind.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        clock: Clock,
        locks: Optional[UserLocks] = None,
        *,
        at_risk_cutoff_hour: Optional[int] = None,
        sync_timeout_seconds: Optional[float] = None,
        backoff_base_seconds: Optional[int] = None,
        backoff_cap_seconds: Optional[int] = None,
        max_retries: Optional[int] = None,
    ):
        self._store = store
        self._clock = clock
        self._locks = locks or UserLocks()
        self._cutoff_hour = at_risk_cutoff_hour if at_risk_cutoff_hour is not None else settings.AT_RISK_CUTOFF_HOUR
        self.ledger = StreakLedger(store, clock, self._locks)
        self.engine = ReconciliationEngine(self.ledger, store, remote, clock, self._locks)
        self.coordinator = SyncCoordinator(
            self.engine,
            clock,
            timeout_seconds=sync_timeout_seconds,
            backoff_base_seconds=backoff_base_seconds,
            backoff_cap_seconds=backoff_cap_seconds,
            max_retries=max_retries,
        )

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def ledger_store(self) -> LocalStore:
        return self._store

    def _commit(self, user_id: str, write):
        with self._locks.for_user(user_id), self._store.transaction(user_id):
            result = write()
            self.engine.commit_local(user_id)
        return result

    # Mutations ------------------------------------------------------------
    def complete_challenge(
        self,
        user_id: str,
        day: Optional[date] = None,
        challenge_ref: Optional[str] = None,
        effort_level: Optional[int] = None,
        *,
        recorded_at: Optional[datetime] = None,
        note: Optional[str] = None,
    ) -> LedgerEntry:
        target = day or self._clock.today(user_id)
        return self._commit(
            user_id,
            lambda: self.ledger.record_completion(
                user_id, target, challenge_ref, effort_level, recorded_at=recorded_at, note=note
            ),
        )

    def skip_challenge(
        self,
        user_id: str,
        reason: str,
        day: Optional[date] = None,
        *,
        recorded_at: Optional[datetime] = None,
    ) -> LedgerEntry:
        target = day or self._clock.today(user_id)
        return self._commit(user_id, lambda: self.ledger.record_skip(user_id, target, reason, recorded_at=recorded_at))

    def consume_bank_day(self, user_id: str, day: date) -> StreakBankTransaction:
        return self._commit(user_id, lambda: self.ledger.consume_bank_day(user_id, day))

    def grant_bank_days(self, user_id: str, days: int, reason: str) -> StreakBankTransaction:
        return self._commit(user_id, lambda: self.ledger.grant_bank_days(user_id, days, reason))

    def record_checkin(
        self,
        user_id: str,
        time_of_day: str,
        day: Optional[date] = None,
        *,
        mood: Optional[str] = None,
        effort_level: Optional[int] = None,
        has_response: bool = False,
    ) -> CheckIn:
        target = day or self._clock.today(user_id)
        return self.ledger.record_checkin(
            user_id, target, time_of_day, mood=mood, effort_level=effort_level, has_response=has_response
        )

    # Reads ----------------------------------------------------------------
    def current_progress(self, user_id: str) -> StreakState:
        """Cached state; recomputed once when the user's day has rolled over."""
        state = self.engine.cached_state(user_id)
        if state.last_computed_date != self._clock.today(user_id):
            state = self.engine.commit_local(user_id)
        return state

    def history(self, user_id: str, start: Optional[date] = None, end: Optional[date] = None) -> List[LedgerEntry]:
        if start and end and start > end:
            raise ValidationError("start must not be after end")
        return self.ledger.entries(user_id, start, end)

    def checkins(self, user_id: str, start: Optional[date] = None, end: Optional[date] = None) -> List[CheckIn]:
        return self.ledger.checkins(user_id, start, end)

    # Sync -----------------------------------------------------------------
    async def trigger_sync(self, user_id: str, reason: str = "manual") -> SyncStatus:
        return await self.coordinator.trigger_sync(user_id, reason)

    def sync_status(self, user_id: str) -> SyncStatus:
        return self.coordinator.status(user_id)

    async def sign_out(self, user_id: str) -> bool:
        return await self.coordinator.sign_out(user_id)

    # Projections ----------------------------------------------------------
    def projection(
        self,
        user_id: str,
        kind: Union[str, ProjectionKind],
        *,
        week_start: Optional[date] = None,
    ) -> ProjectionResult:
        try:
            kind = ProjectionKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown projection: {kind}")

        today = self._clock.today(user_id)
        if kind == ProjectionKind.STREAK_LEVEL:
            value = projector.streak_level(self.current_progress(user_id).current_streak).value
        elif kind == ProjectionKind.WEEKLY_COMPLETION_RATE:
            _, covered = bank_summary(self.ledger.bank_transactions(user_id))
            entries = self.ledger.entries(user_id, today - timedelta(days=6), today)
            value = projector.weekly_completion_rate(entries, covered, today)
        elif kind == ProjectionKind.AT_RISK:
            value = projector.is_streak_at_risk(
                self.ledger.get_entry(user_id, today),
                self._clock.local_now(user_id),
                self._cutoff_hour,
            )
        elif kind == ProjectionKind.MOOD_TREND:
            start = today - timedelta(days=MOOD_WINDOW_DAYS - 1)
            value = projector.mood_report(self.ledger.checkins(user_id, start, today)).model_dump(mode="json")
        elif kind == ProjectionKind.MILESTONES:
            value = projector.next_milestone(self.current_progress(user_id).current_streak).model_dump(mode="json")
        else:
            start = week_start or today - timedelta(days=today.weekday())
            end = start + timedelta(days=6)
            value = projector.weekly_summary(
                user_id,
                self.ledger.entries(user_id, start, end),
                self.ledger.checkins(user_id, start, end),
                start,
            ).model_dump(mode="json")

        return ProjectionResult(user_id=user_id, kind=kind, value=value, computed_at=truncate_ms(self._clock.now()))


def build_default_service(clock: Optional[Clock] = None) -> StreakService:
    """Wire stores from configuration: SQL when DATABASE_URL is set, HTTP remote when REMOTE_URL is set."""
    clock = clock or SystemClock()
    store = get_local_store()
    if settings.REMOTE_URL:
        remote: RemoteStore = HttpRemoteStore()
    else:
        remote = InMemoryRemoteStore(clock)
    log_event(
        "info",
        "streak_service.configured",
        event_type="startup",
        extra={"local_store": type(store).__name__, "remote_store": type(remote).__name__},
    )
    return StreakService(store, remote, clock)
