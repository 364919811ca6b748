"""
mentor/features/sync/coordinator.py

Schedules reconciliation per user.

- At most one sync runs per user; later triggers join it.
- Automatic triggers respect the backoff window, manual ones bypass it.
- Failures are recorded on SyncStatus and never raised to the trigger's
  caller. After SYNC_MAX_RETRIES consecutive retryable failures the user is
  stalled until a manual sync succeeds.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import timedelta
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from mentor.core.clock import Clock, truncate_ms
from mentor.core.config import settings
from mentor.core.errors import AppError, SyncConflictError, SyncStalledError, SyncTransientError, ValidationError
from mentor.core.logging import bind_request_id, get_request_id, log_event
from mentor.features.sync.engine import ReconciliationEngine
from mentor.models.sync import SyncPhase, SyncStatus

logger = logging.getLogger("mentor")

AUTOMATIC_REASONS = frozenset({"app_active", "connectivity_online", "periodic"})
MANUAL_REASON = "manual"

StatusObserver = Callable[[SyncStatus], None]


def compute_backoff(failures: int, base_seconds: int, cap_seconds: int) -> timedelta:
    """Exponential backoff: base * 2**(failures-1), capped."""
    if failures <= 0:
        return timedelta(0)
    seconds = min(cap_seconds, base_seconds * 2 ** (failures - 1))
    return timedelta(seconds=seconds)


class SyncCoordinator:
    def __init__(
        self,
        engine: ReconciliationEngine,
        clock: Clock,
        *,
        timeout_seconds: Optional[float] = None,
        backoff_base_seconds: Optional[int] = None,
        backoff_cap_seconds: Optional[int] = None,
        max_retries: Optional[int] = None,
    ):
        self._engine = engine
        self._clock = clock
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.SYNC_TIMEOUT_SECONDS
        self._backoff_base = backoff_base_seconds if backoff_base_seconds is not None else settings.SYNC_BACKOFF_BASE_SECONDS
        self._backoff_cap = backoff_cap_seconds if backoff_cap_seconds is not None else settings.SYNC_BACKOFF_CAP_SECONDS
        self._max_retries = max_retries if max_retries is not None else settings.SYNC_MAX_RETRIES
        self._statuses: Dict[str, SyncStatus] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._observers: List[StatusObserver] = []

    # Status ---------------------------------------------------------------
    def status(self, user_id: str) -> SyncStatus:
        return self._statuses.get(user_id) or SyncStatus(user_id=user_id)

    def is_syncing(self, user_id: str) -> bool:
        task = self._inflight.get(user_id)
        return task is not None and not task.done()

    def subscribe(self, observer: StatusObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _set(self, status: SyncStatus) -> SyncStatus:
        previous = self.status(status.user_id)
        self._statuses[status.user_id] = status
        if previous.phase != status.phase:
            log_event(
                "info",
                "sync.transition",
                user_id=status.user_id,
                event_type="sync",
                error_code=status.error_code,
                extra={"from": previous.phase.value, "to": status.phase.value, "reason": status.reason},
            )
        for observer in list(self._observers):
            try:
                observer(status)
            except Exception:
                logger.exception("sync.observer_failed", extra={"user_id": status.user_id})
        return status

    # Triggers -------------------------------------------------------------
    async def trigger_sync(self, user_id: str, reason: str = MANUAL_REASON) -> SyncStatus:
        if reason != MANUAL_REASON and reason not in AUTOMATIC_REASONS:
            raise ValidationError(f"Unknown sync reason: {reason}")

        task = self._inflight.get(user_id)
        if task is not None and not task.done():
            log_event("info", "sync.joined", user_id=user_id, event_type="sync", extra={"reason": reason})
            return await self._await(user_id, task)

        current = self.status(user_id)
        if reason in AUTOMATIC_REASONS:
            if current.phase == SyncPhase.STALLED:
                return current
            if current.next_retry_at is not None and self._clock.now() < current.next_retry_at:
                log_event(
                    "info",
                    "sync.deferred",
                    user_id=user_id,
                    event_type="sync",
                    extra={"reason": reason, "next_retry_at": current.next_retry_at.isoformat()},
                )
                return current

        task = asyncio.create_task(self._run(user_id, reason))
        self._inflight[user_id] = task
        return await self._await(user_id, task)

    async def _await(self, user_id: str, task: asyncio.Task) -> SyncStatus:
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return self.status(user_id)
            raise

    async def _run(self, user_id: str, reason: str) -> SyncStatus:
        # Background runs get their own correlation id; request-driven runs keep the request's.
        with bind_request_id(get_request_id() or f"sync-{uuid4().hex[:12]}"):
            return await self._reconcile(user_id, reason)

    async def _reconcile(self, user_id: str, reason: str) -> SyncStatus:
        previous = self.status(user_id)
        self._set(previous.model_copy(update={"phase": SyncPhase.SYNCING, "reason": reason}))
        try:
            report = await asyncio.wait_for(self._engine.reconcile(user_id), timeout=self._timeout)
        except asyncio.TimeoutError:
            return self._failed(user_id, reason, previous, SyncTransientError(f"Sync timed out after {self._timeout}s"))
        except AppError as exc:
            return self._failed(user_id, reason, previous, exc)
        except asyncio.CancelledError:
            self._set(previous.model_copy(update={"phase": SyncPhase.IDLE, "reason": "cancelled"}))
            raise
        except Exception as exc:
            logger.exception("sync.crashed", extra={"user_id": user_id})
            self._failed(user_id, reason, previous, AppError(str(exc) or exc.__class__.__name__, code="internal_error"))
            raise
        finally:
            if self._inflight.get(user_id) is asyncio.current_task():
                self._inflight.pop(user_id, None)

        return self._set(
            SyncStatus(
                user_id=user_id,
                phase=SyncPhase.SYNCED,
                reason=reason,
                last_synced_at=truncate_ms(self._clock.now()),
                clock_skew_days=report.clock_skew_days,
            )
        )

    def _failed(self, user_id: str, reason: str, previous: SyncStatus, exc: AppError) -> SyncStatus:
        failures = previous.consecutive_failures + 1
        now = self._clock.now()
        base = dict(
            user_id=user_id,
            reason=reason,
            last_synced_at=previous.last_synced_at,
            last_error=exc.message,
            consecutive_failures=failures,
            clock_skew_days=previous.clock_skew_days,
        )
        if isinstance(exc, SyncConflictError):
            status = SyncStatus(phase=SyncPhase.CONFLICT, error_code=exc.code, conflicts=[exc.message], **base)
        elif exc.retryable and failures >= self._max_retries:
            stalled = SyncStalledError(f"Sync stalled after {failures} consecutive failures: {exc.message}")
            status = SyncStatus(phase=SyncPhase.STALLED, error_code=stalled.code, **{**base, "last_error": stalled.message})
        else:
            status = SyncStatus(
                phase=SyncPhase.ERROR,
                error_code=exc.code,
                retryable=exc.retryable,
                next_retry_at=truncate_ms(now + compute_backoff(failures, self._backoff_base, self._backoff_cap)),
                **base,
            )
        log_event(
            "warning",
            "sync.failed",
            user_id=user_id,
            event_type="sync",
            error_code=status.error_code,
            extra={"reason": reason, "failures": failures, "error": exc.message},
        )
        return self._set(status)

    # Session --------------------------------------------------------------
    async def sign_out(self, user_id: str) -> bool:
        """Cancel the user's in-flight sync and forget their status. True if a sync was cancelled."""
        task = self._inflight.pop(user_id, None)
        cancelled = False
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            cancelled = True
        self._statuses.pop(user_id, None)
        log_event("info", "sync.signed_out", user_id=user_id, event_type="session", extra={"cancelled": cancelled})
        return cancelled

    async def shutdown(self) -> int:
        """Cancel every in-flight sync; returns how many were cancelled. Statuses are kept."""
        tasks = [task for task in self._inflight.values() if not task.done()]
        self._inflight.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            log_event("info", "sync.shutdown", event_type="sync", extra={"cancelled": len(tasks)})
        return len(tasks)

    async def run_periodic(
        self,
        user_id: str,
        interval: Optional[float] = None,
        iterations: Optional[int] = None,
        on_status: Optional[StatusObserver] = None,
    ) -> None:
        """Fire the periodic trigger every interval seconds; forever unless iterations is given."""
        delay = interval if interval is not None else settings.SYNC_INTERVAL_SECONDS
        count = 0
        while iterations is None or count < iterations:
            status = await self.trigger_sync(user_id, "periodic")
            if on_status is not None:
                on_status(status)
            count += 1
            if iterations is not None and count >= iterations:
                break
            await asyncio.sleep(delay)
