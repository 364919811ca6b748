"""
mentor/models/progress.py
Read models produced by the progress projector. All immutable.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class StreakLevel(str, Enum):
    BEGINNER = "beginner"
    DEVELOPING = "developing"
    CONSISTENT = "consistent"
    STRONG = "strong"
    CHAMPION = "champion"
    LEGENDARY = "legendary"


class MoodTrend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class ProjectionKind(str, Enum):
    STREAK_LEVEL = "streak_level"
    WEEKLY_COMPLETION_RATE = "weekly_completion_rate"
    AT_RISK = "at_risk"
    MOOD_TREND = "mood_trend"
    MILESTONES = "milestones"
    WEEKLY_SUMMARY = "weekly_summary"


class MoodPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: date
    average_mood: float = Field(ge=1, le=5)
    data_points: int = Field(ge=1)


class MoodReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    points: List[MoodPoint]
    trend: MoodTrend
    average_mood: Optional[float] = None


class MilestoneProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    reached: List[int]
    next_target: Optional[int] = Field(default=None, description="None once every milestone is reached")
    days_remaining: Optional[int] = None


class WeeklySummary(BaseModel):
    """Mirror of the hosted weekly-summary function, computed locally."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    week_start_date: date
    week_end_date: date
    challenges_completed: int = Field(ge=0)
    checkins_answered: int = Field(ge=0)
    dominant_mood: Optional[str] = None
    summary: str


class ProjectionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    kind: ProjectionKind
    value: Any
    computed_at: datetime
