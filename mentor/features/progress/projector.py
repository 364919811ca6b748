"""
mentor/features/progress/projector.py

Pure read-side projections over ledger entries, check-ins and the cached
streak state. Nothing here mutates or persists; same inputs give the same
output, so callers may invoke these as often as they like.
"""

from collections import Counter
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

from mentor.models.ledger import CheckIn, LedgerEntry
from mentor.models.progress import (
    MilestoneProgress,
    MoodPoint,
    MoodReport,
    MoodTrend,
    StreakLevel,
    WeeklySummary,
)

# Lower bound (inclusive) of each level, highest first.
STREAK_LEVEL_THRESHOLDS = (
    (100, StreakLevel.LEGENDARY),
    (50, StreakLevel.CHAMPION),
    (21, StreakLevel.STRONG),
    (7, StreakLevel.CONSISTENT),
    (3, StreakLevel.DEVELOPING),
    (0, StreakLevel.BEGINNER),
)

MILESTONES = (7, 14, 30, 50, 100, 365)

MOOD_SCORES: Dict[str, int] = {
    "low": 1,
    "neutral": 2,
    "good": 3,
    "great": 4,
    "excellent": 5,
}

MOOD_TREND_THRESHOLD = 0.5


def streak_level(current_streak: int) -> StreakLevel:
    for lower, level in STREAK_LEVEL_THRESHOLDS:
        if current_streak >= lower:
            return level
    return StreakLevel.BEGINNER


def weekly_completion_rate(
    entries: Iterable[LedgerEntry],
    covered_dates: Iterable[date],
    as_of: date,
) -> float:
    """
    Fraction of the trailing 7 days (as_of inclusive) that qualify.

    A day qualifies when it has a completed entry or bank coverage.
    """
    window = {as_of - timedelta(days=offset) for offset in range(7)}
    qualifying: Set[date] = {e.date for e in entries if e.completed and e.date in window}
    qualifying |= {d for d in covered_dates if d in window}
    return round(len(qualifying) / 7, 4)


def is_streak_at_risk(today_entry: Optional[LedgerEntry], local_now: datetime, cutoff_hour: int) -> bool:
    """True once the user's local hour reaches cutoff_hour with today still not completed."""
    if today_entry is not None and today_entry.completed:
        return False
    return local_now.hour >= cutoff_hour


def mood_by_day(checkins: Iterable[CheckIn], start: Optional[date] = None, end: Optional[date] = None) -> List[MoodPoint]:
    """Per-day average mood score. Check-ins without a mood are excluded."""
    buckets: Dict[date, List[int]] = {}
    for checkin in checkins:
        if checkin.mood is None:
            continue
        if start is not None and checkin.date < start:
            continue
        if end is not None and checkin.date > end:
            continue
        buckets.setdefault(checkin.date, []).append(MOOD_SCORES[checkin.mood])

    return [
        MoodPoint(date=day, average_mood=round(sum(scores) / len(scores), 2), data_points=len(scores))
        for day, scores in sorted(buckets.items())
    ]


def mood_trend(points: List[MoodPoint]) -> MoodTrend:
    """Compare the later half's average with the earlier half's."""
    if len(points) < 2:
        return MoodTrend.STABLE
    middle = len(points) // 2
    earlier = points[:middle]
    later = points[middle:]
    earlier_avg = sum(p.average_mood for p in earlier) / len(earlier)
    later_avg = sum(p.average_mood for p in later) / len(later)
    delta = later_avg - earlier_avg
    if delta >= MOOD_TREND_THRESHOLD:
        return MoodTrend.IMPROVING
    if delta <= -MOOD_TREND_THRESHOLD:
        return MoodTrend.DECLINING
    return MoodTrend.STABLE


def mood_report(checkins: Iterable[CheckIn], start: Optional[date] = None, end: Optional[date] = None) -> MoodReport:
    points = mood_by_day(checkins, start, end)
    total = sum(p.data_points for p in points)
    average = round(sum(p.average_mood * p.data_points for p in points) / total, 2) if total else None
    return MoodReport(points=points, trend=mood_trend(points), average_mood=average)


def next_milestone(current_streak: int) -> MilestoneProgress:
    reached = [m for m in MILESTONES if current_streak >= m]
    upcoming = [m for m in MILESTONES if current_streak < m]
    if not upcoming:
        return MilestoneProgress(reached=reached)
    target = upcoming[0]
    return MilestoneProgress(reached=reached, next_target=target, days_remaining=target - current_streak)


def weekly_summary(
    user_id: str,
    entries: Iterable[LedgerEntry],
    checkins: Iterable[CheckIn],
    week_start: date,
) -> WeeklySummary:
    """Local version of the hosted weekly summary for week_start..week_start+6."""
    week_end = week_start + timedelta(days=6)

    completed = sum(1 for e in entries if e.completed and week_start <= e.date <= week_end)
    week_checkins = [c for c in checkins if week_start <= c.date <= week_end]
    answered = sum(1 for c in week_checkins if c.has_response)
    moods = Counter(c.mood for c in week_checkins if c.mood)
    dominant = moods.most_common(1)[0][0] if moods else None

    return WeeklySummary(
        user_id=user_id,
        week_start_date=week_start,
        week_end_date=week_end,
        challenges_completed=completed,
        checkins_answered=answered,
        dominant_mood=dominant,
        summary=(
            f"This week you completed {completed} challenges and had {answered} check-ins. "
            f"Your dominant mood was {dominant or 'not recorded'}."
        ),
    )
