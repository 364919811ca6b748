from datetime import date, datetime, timedelta, timezone

import pytest

from mentor.features.progress import projector
from mentor.models.ledger import CheckIn, LedgerEntry
from mentor.models.progress import MoodPoint, MoodTrend, StreakLevel

AS_OF = date(2026, 3, 10)
AT = datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)


def _entry(day, completed=True):
    return LedgerEntry(user_id="u1", date=day, completed=completed, recorded_at=AT)


def _checkin(day, mood, time_of_day="morning", has_response=True):
    return CheckIn(user_id="u1", date=day, time_of_day=time_of_day, mood=mood, has_response=has_response, recorded_at=AT)


@pytest.mark.parametrize(
    "current,level",
    [
        (0, StreakLevel.BEGINNER),
        (2, StreakLevel.BEGINNER),
        (3, StreakLevel.DEVELOPING),
        (6, StreakLevel.DEVELOPING),
        (7, StreakLevel.CONSISTENT),
        (20, StreakLevel.CONSISTENT),
        (21, StreakLevel.STRONG),
        (49, StreakLevel.STRONG),
        (50, StreakLevel.CHAMPION),
        (99, StreakLevel.CHAMPION),
        (100, StreakLevel.LEGENDARY),
        (1000, StreakLevel.LEGENDARY),
    ],
)
def test_streak_level_thresholds(current, level):
    assert projector.streak_level(current) == level


def test_weekly_completion_rate_counts_bank_coverage():
    entries = [
        _entry(AS_OF),
        _entry(AS_OF - timedelta(days=1)),
        _entry(AS_OF - timedelta(days=2), completed=False),
        _entry(AS_OF - timedelta(days=6)),
        _entry(AS_OF - timedelta(days=7)),  # outside the window
    ]
    covered = {AS_OF - timedelta(days=3)}

    assert projector.weekly_completion_rate(entries, covered, AS_OF) == round(4 / 7, 4)


def test_at_risk_after_cutoff_only_when_not_completed():
    evening = datetime(2026, 3, 10, 21, 0, tzinfo=timezone.utc)
    afternoon = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)

    assert projector.is_streak_at_risk(None, evening, 20) is True
    assert projector.is_streak_at_risk(_entry(AS_OF, completed=False), evening, 20) is True
    assert projector.is_streak_at_risk(None, afternoon, 20) is False
    assert projector.is_streak_at_risk(_entry(AS_OF), evening, 20) is False


def test_mood_by_day_averages_and_skips_missing_moods():
    day = AS_OF - timedelta(days=1)
    checkins = [
        _checkin(day, "low"),
        _checkin(day, "great", time_of_day="evening"),
        _checkin(AS_OF, None),
    ]

    points = projector.mood_by_day(checkins)

    assert points == [MoodPoint(date=day, average_mood=2.5, data_points=2)]


def _points(*scores):
    return [MoodPoint(date=AS_OF - timedelta(days=len(scores) - i), average_mood=s, data_points=1) for i, s in enumerate(scores)]


def test_mood_trend_directions():
    assert projector.mood_trend(_points(2, 2, 4, 4)) == MoodTrend.IMPROVING
    assert projector.mood_trend(_points(5, 4, 2, 2)) == MoodTrend.DECLINING
    assert projector.mood_trend(_points(3, 3, 3, 3.4)) == MoodTrend.STABLE
    assert projector.mood_trend(_points(4)) == MoodTrend.STABLE


def test_next_milestone():
    start = projector.next_milestone(0)
    assert start.reached == []
    assert start.next_target == 7
    assert start.days_remaining == 7

    mid = projector.next_milestone(30)
    assert mid.reached == [7, 14, 30]
    assert mid.next_target == 50

    done = projector.next_milestone(400)
    assert done.next_target is None
    assert done.days_remaining is None


def test_weekly_summary_mirrors_hosted_function():
    week_start = date(2026, 3, 9)
    entries = [_entry(week_start), _entry(week_start + timedelta(days=1)), _entry(week_start - timedelta(days=1))]
    checkins = [
        _checkin(week_start, "good"),
        _checkin(week_start + timedelta(days=1), "good"),
        _checkin(week_start + timedelta(days=2), "low", has_response=False),
    ]

    summary = projector.weekly_summary("u1", entries, checkins, week_start)

    assert summary.week_end_date == date(2026, 3, 15)
    assert summary.challenges_completed == 2
    assert summary.checkins_answered == 2
    assert summary.dominant_mood == "good"
    assert "completed 2 challenges" in summary.summary
