from datetime import timedelta

import pytest

from mentor.core.errors import (
    BankDayNotAllowedError,
    DuplicateEntryError,
    InsufficientBankError,
    ValidationError,
)
from mentor.features.streaks.ledger import bank_summary, compute_streaks
from mentor.models.ledger import LedgerEntry, StreakBankTransaction


def _days_ago(today, n):
    return today - timedelta(days=n)


def test_identical_completion_is_idempotent(service, today):
    first = service.complete_challenge("u1", challenge_ref="c1")
    second = service.complete_challenge("u1", challenge_ref="c1")

    assert second == first
    assert len(service.history("u1")) == 1
    assert service.current_progress("u1").current_streak == 1


def test_stale_write_raises_duplicate_with_existing(service, clock, today):
    entry = service.complete_challenge("u1", challenge_ref="c1")

    with pytest.raises(DuplicateEntryError) as exc_info:
        service.skip_challenge("u1", "sick", recorded_at=clock.now() - timedelta(minutes=1))

    assert exc_info.value.existing == entry
    assert service.history("u1")[0].completed is True


def test_newer_write_supersedes(service, clock, today):
    service.complete_challenge("u1", challenge_ref="c1")
    clock.advance(minutes=5)

    skipped = service.skip_challenge("u1", "travelling")

    history = service.history("u1")
    assert len(history) == 1
    assert history[0] == skipped
    assert history[0].completed is False
    assert history[0].skip_reason == "travelling"
    assert service.current_progress("u1").current_streak == 0


def test_future_day_rejected(service, today):
    with pytest.raises(ValidationError):
        service.complete_challenge("u1", today + timedelta(days=1))
    assert service.history("u1") == []


def test_effort_level_out_of_range_rejected(service):
    with pytest.raises(ValidationError):
        service.complete_challenge("u1", effort_level=6)
    assert service.history("u1") == []


def test_skip_requires_reason(service):
    with pytest.raises(ValidationError):
        service.skip_challenge("u1", "   ")


def test_streak_of_three_extends_to_four(service, today):
    for n in (3, 2, 1):
        service.complete_challenge("u1", _days_ago(today, n))
    # Today not done yet does not break the streak.
    assert service.current_progress("u1").current_streak == 3

    service.complete_challenge("u1")

    state = service.current_progress("u1")
    assert state.current_streak == 4
    assert state.longest_streak == 4


def test_miss_without_bank_resets_streak(service, today):
    service.complete_challenge("u1", _days_ago(today, 3))
    service.complete_challenge("u1", _days_ago(today, 2))

    state = service.current_progress("u1")
    assert state.current_streak == 0
    assert state.longest_streak == 2

    service.complete_challenge("u1")
    state = service.current_progress("u1")
    assert state.current_streak == 1
    assert state.longest_streak == 2


def test_longest_streak_never_decreases(service, clock, today):
    for n in (2, 1, 0):
        service.complete_challenge("u1", _days_ago(today, n))
    assert service.current_progress("u1").longest_streak == 3

    clock.advance(minutes=1)
    service.skip_challenge("u1", "correction", _days_ago(today, 1))

    state = service.current_progress("u1")
    assert state.current_streak == 1
    assert state.longest_streak == 3


def test_bank_day_requires_balance(service, today):
    with pytest.raises(InsufficientBankError):
        service.consume_bank_day("u1", _days_ago(today, 1))


def test_bank_day_eligibility(service, today):
    service.grant_bank_days("u1", 2, "subscription")
    service.complete_challenge("u1", _days_ago(today, 2))

    with pytest.raises(BankDayNotAllowedError):
        service.consume_bank_day("u1", today)
    with pytest.raises(BankDayNotAllowedError):
        service.consume_bank_day("u1", _days_ago(today, 2))

    service.consume_bank_day("u1", _days_ago(today, 1))
    with pytest.raises(BankDayNotAllowedError):
        service.consume_bank_day("u1", _days_ago(today, 1))

    assert service.current_progress("u1").streak_bank_days == 1


def test_bank_covered_day_keeps_streak(service, today):
    service.complete_challenge("u1", _days_ago(today, 3))
    service.complete_challenge("u1", _days_ago(today, 2))
    service.grant_bank_days("u1", 1, "subscription")
    service.consume_bank_day("u1", _days_ago(today, 1))
    service.complete_challenge("u1")

    state = service.current_progress("u1")
    assert state.current_streak == 4
    assert state.streak_bank_days == 0


def test_grant_requires_positive_days(service):
    with pytest.raises(ValidationError):
        service.grant_bank_days("u1", 0, "promo")


def test_failed_commit_leaves_no_entry(service, monkeypatch):
    def boom(user_id):
        raise RuntimeError("disk full")

    monkeypatch.setattr(service.engine, "commit_local", boom)

    with pytest.raises(RuntimeError):
        service.complete_challenge("u1", challenge_ref="c1")

    assert service.history("u1") == []
    assert service.engine.cached_state("u1").current_streak == 0


def test_same_day_consumed_twice_is_charged_once(clock, today):
    day = _days_ago(today, 1)
    txns = [
        StreakBankTransaction(transaction_id="g1", user_id="u1", kind="grant", days=2, recorded_at=clock.now()),
        StreakBankTransaction(transaction_id="a", user_id="u1", kind="consume", covered_date=day, recorded_at=clock.now()),
        StreakBankTransaction(transaction_id="b", user_id="u1", kind="consume", covered_date=day, recorded_at=clock.now()),
    ]

    balance, covered = bank_summary(txns)

    assert balance == 1
    assert covered == {day}


def test_entries_after_today_are_ignored(clock, today):
    entries = {
        day: LedgerEntry(user_id="u1", date=day, completed=True, recorded_at=clock.now())
        for day in (_days_ago(today, 1), today + timedelta(days=1), today + timedelta(days=2))
    }

    current, longest = compute_streaks(entries, set(), today)

    assert current == 1
    assert longest == 1
