"""Reconciliation against the in-memory remote store."""

import asyncio
from datetime import timedelta

import pytest

from mentor.core.errors import SyncTransientError
from mentor.features.storage import codecs
from mentor.features.storage.remote_store import InMemoryRemoteStore
from mentor.features.streaks.service import StreakService
from mentor.models.ledger import (
    ENTITY_BANK_TRANSACTION,
    ENTITY_LEDGER_ENTRY,
    LedgerEntry,
)


def _remote_entry_row(clock, day, **fields):
    entry = LedgerEntry(
        user_id="u1",
        date=day,
        completed=fields.pop("completed", True),
        recorded_at=clock.now() - timedelta(hours=1),
        **fields,
    )
    return codecs.entry_to_remote(entry)


def _upserts(remote):
    return [call for call in remote.calls if call[0] == "upsert"]


@pytest.mark.asyncio
async def test_local_entries_and_counters_are_pushed(service, remote, today):
    service.complete_challenge("u1", today - timedelta(days=1))
    service.complete_challenge("u1")

    report = await service.engine.reconcile("u1")

    assert report.pushed == 2
    assert len(remote.rows(ENTITY_LEDGER_ENTRY, "u1")) == 2
    assert remote.profile("u1")["current_streak"] == 2
    assert all(not entry.pending_push for entry in service.history("u1"))


@pytest.mark.asyncio
async def test_reconcile_twice_is_a_noop(service, remote, today):
    service.complete_challenge("u1", today - timedelta(days=1))
    service.complete_challenge("u1")
    await service.engine.reconcile("u1")

    second = await service.engine.reconcile("u1")
    cursor = service.engine.get_cursor("u1", ENTITY_LEDGER_ENTRY)
    upserts_before = len(_upserts(remote))

    third = await service.engine.reconcile("u1")

    assert second.pushed == 0
    assert third.pushed == 0
    assert third.state.counters() == second.state.counters() == (2, 2, 0)
    assert len(_upserts(remote)) == upserts_before
    assert service.engine.get_cursor("u1", ENTITY_LEDGER_ENTRY) == cursor


@pytest.mark.asyncio
async def test_remote_entries_from_another_device_are_adopted(service, remote, clock, today):
    await remote.upsert("u1", ENTITY_LEDGER_ENTRY, [_remote_entry_row(clock, today - timedelta(days=1), effort_level=3)])
    service.complete_challenge("u1")

    report = await service.engine.reconcile("u1")

    assert report.adopted_remote == 1
    assert report.state.current_streak == 2
    adopted = service.history("u1")[0]
    assert adopted.source == "remote"
    assert adopted.effort_level == 3


def _cache_five_day_run(service, clock, today):
    """Completions on days -6..-2, cached while day -2 was today; then two days pass."""
    clock.advance(days=-2)
    for n in range(6, 1, -1):
        service.complete_challenge("u1", today - timedelta(days=n))
    service.grant_bank_days("u1", 1, "subscription")
    assert service.current_progress("u1").current_streak == 5
    clock.advance(days=2)


@pytest.mark.asyncio
async def test_bank_day_applied_for_offline_miss(service, remote, clock, today):
    _cache_five_day_run(service, clock, today)
    # Missed yesterday, completed today.
    service.complete_challenge("u1")
    assert service.current_progress("u1").current_streak == 1

    report = await service.engine.reconcile("u1")

    assert report.bank_days_applied == [today - timedelta(days=1)]
    state = service.current_progress("u1")
    assert state.current_streak == 7
    assert state.streak_bank_days == 0
    assert state.peak_since_sync == 7
    assert len(remote.rows(ENTITY_BANK_TRANSACTION, "u1")) == 2


@pytest.mark.asyncio
async def test_bank_day_applied_when_syncing_before_todays_completion(service, clock, today):
    _cache_five_day_run(service, clock, today)

    report = await service.engine.reconcile("u1")

    assert report.bank_days_applied == [today - timedelta(days=1)]
    assert report.state.current_streak == 6
    assert report.state.streak_bank_days == 0

    service.complete_challenge("u1")
    assert service.current_progress("u1").current_streak == 7


@pytest.mark.asyncio
async def test_old_gap_outside_cached_run_is_left_alone(service, today):
    for n in (10, 9, 2, 1, 0):
        service.complete_challenge("u1", today - timedelta(days=n))
    service.grant_bank_days("u1", 6, "subscription")
    assert service.current_progress("u1").current_streak == 3

    report = await service.engine.reconcile("u1")

    assert report.bank_days_applied == []
    assert report.state.current_streak == 3
    assert report.state.streak_bank_days == 6


@pytest.mark.asyncio
async def test_gap_larger_than_balance_is_not_partially_covered(service, clock, today):
    clock.advance(days=-3)
    for n in (5, 4, 3):
        service.complete_challenge("u1", today - timedelta(days=n))
    service.grant_bank_days("u1", 1, "subscription")
    clock.advance(days=3)
    service.complete_challenge("u1")

    report = await service.engine.reconcile("u1")

    assert report.bank_days_applied == []
    assert report.state.current_streak == 1
    assert report.state.streak_bank_days == 1


@pytest.mark.asyncio
async def test_skipped_day_is_not_bank_covered(service, clock, today):
    clock.advance(days=-1)
    for n in (3, 2):
        service.complete_challenge("u1", today - timedelta(days=n))
    assert service.current_progress("u1").current_streak == 2
    clock.advance(days=1)
    service.skip_challenge("u1", "rest day", today - timedelta(days=1))
    service.grant_bank_days("u1", 1, "subscription")
    service.complete_challenge("u1")

    report = await service.engine.reconcile("u1")

    assert report.bank_days_applied == []
    assert report.state.current_streak == 1
    assert report.state.streak_bank_days == 1


@pytest.mark.asyncio
async def test_remote_zeroed_counter_is_discarded(service, remote, today):
    service.complete_challenge("u1", today - timedelta(days=3))
    service.complete_challenge("u1", today - timedelta(days=2))
    service.grant_bank_days("u1", 1, "subscription")
    service.consume_bank_day("u1", today - timedelta(days=1))
    service.complete_challenge("u1")
    # Server-side trigger zeroed the counter for the missed day.
    remote.set_profile_counters("u1", current_streak=0, longest_streak=4, streak_bank_days=1)

    report = await service.engine.reconcile("u1")

    assert report.remote_counter_discarded is True
    assert report.state.current_streak == 4
    assert remote.profile("u1")["current_streak"] == 4
    assert remote.profile("u1")["streak_bank_days"] == 0


@pytest.mark.asyncio
async def test_push_failure_keeps_local_merge(service, remote, clock, today):
    stored = await remote.upsert("u1", ENTITY_LEDGER_ENTRY, [_remote_entry_row(clock, today - timedelta(days=1))])
    service.complete_challenge("u1")
    remote.fail_next(op="upsert")

    with pytest.raises(SyncTransientError):
        await service.engine.reconcile("u1")

    history = service.history("u1")
    assert [e.date for e in history] == [today - timedelta(days=1), today]
    assert history[1].pending_push
    assert service.current_progress("u1").current_streak == 2
    assert service.engine.get_cursor("u1", ENTITY_LEDGER_ENTRY) == codecs.parse_ts(stored[0]["updated_at"])

    report = await service.engine.reconcile("u1")
    assert report.pushed == 1
    assert len(remote.rows(ENTITY_LEDGER_ENTRY, "u1")) == 2


@pytest.mark.asyncio
async def test_clock_skew_is_flagged_not_fatal(local_store, clock, today):
    skewed = InMemoryRemoteStore(clock, skew=timedelta(days=3))
    service = StreakService(local_store, skewed, clock)
    service.complete_challenge("u1")

    report = await service.engine.reconcile("u1")

    assert report.clock_skew_days == -3
    assert report.state.current_streak == 1


@pytest.mark.asyncio
async def test_cancelled_reconcile_commits_nothing(service, remote, clock, today):
    await remote.upsert("u1", ENTITY_LEDGER_ENTRY, [_remote_entry_row(clock, today - timedelta(days=1))])
    remote.delay_seconds = 0.2

    task = asyncio.create_task(service.engine.reconcile("u1"))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert service.history("u1") == []
    assert service.engine.get_cursor("u1", ENTITY_LEDGER_ENTRY) is None
