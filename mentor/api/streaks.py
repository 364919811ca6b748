from __future__ import annotations

import datetime as dt
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from mentor.features.streaks.service import StreakService
from mentor.models.ledger import Mood, TimeOfDay

router = APIRouter()


def get_streak_service(request: Request) -> StreakService:
    return request.app.state.streak_service


class CompletionRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    date: Optional[dt.date] = None
    challenge_ref: Optional[str] = None
    effort_level: Optional[int] = None
    note: Optional[str] = Field(default=None, max_length=2000)
    recorded_at: Optional[dt.datetime] = None


class SkipRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=500)
    date: Optional[dt.date] = None
    recorded_at: Optional[dt.datetime] = None


class BankConsumeRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    date: dt.date


class BankGrantRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    days: int = Field(..., ge=1, le=365)
    reason: str = Field(..., min_length=1)


class CheckInRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    time_of_day: TimeOfDay
    date: Optional[dt.date] = None
    mood: Optional[Mood] = None
    effort_level: Optional[int] = None
    has_response: bool = False


@router.post("/v1/streaks/complete")
def complete_challenge(body: CompletionRequest, service: StreakService = Depends(get_streak_service)):
    """Record today's (or a past day's) completion and return the fresh state."""
    entry = service.complete_challenge(
        body.user_id,
        body.date,
        body.challenge_ref,
        body.effort_level,
        recorded_at=_normalize(body.recorded_at),
        note=body.note,
    )
    return {"entry": entry.model_dump(mode="json"), "state": service.current_progress(body.user_id).model_dump(mode="json")}


@router.post("/v1/streaks/skip")
def skip_challenge(body: SkipRequest, service: StreakService = Depends(get_streak_service)):
    entry = service.skip_challenge(body.user_id, body.reason, body.date, recorded_at=_normalize(body.recorded_at))
    return {"entry": entry.model_dump(mode="json"), "state": service.current_progress(body.user_id).model_dump(mode="json")}


@router.post("/v1/streaks/bank/consume")
def consume_bank_day(body: BankConsumeRequest, service: StreakService = Depends(get_streak_service)):
    txn = service.consume_bank_day(body.user_id, body.date)
    return {"transaction": txn.model_dump(mode="json"), "state": service.current_progress(body.user_id).model_dump(mode="json")}


@router.post("/v1/streaks/bank/grant")
def grant_bank_days(body: BankGrantRequest, service: StreakService = Depends(get_streak_service)):
    txn = service.grant_bank_days(body.user_id, body.days, body.reason)
    return {"transaction": txn.model_dump(mode="json"), "state": service.current_progress(body.user_id).model_dump(mode="json")}


@router.get("/v1/streaks/current")
def get_current_streak(user_id: str = Query(..., min_length=1), service: StreakService = Depends(get_streak_service)):
    return service.current_progress(user_id).model_dump(mode="json")


@router.get("/v1/streaks/history")
def get_streak_history(
    user_id: str = Query(..., min_length=1),
    start: Optional[dt.date] = Query(default=None),
    end: Optional[dt.date] = Query(default=None),
    service: StreakService = Depends(get_streak_service),
):
    return {"history": [entry.model_dump(mode="json") for entry in service.history(user_id, start, end)]}


@router.get("/v1/progress/{kind}")
def get_projection(
    kind: str,
    user_id: str = Query(..., min_length=1),
    week_start: Optional[dt.date] = Query(default=None),
    service: StreakService = Depends(get_streak_service),
):
    return service.projection(user_id, kind, week_start=week_start).model_dump(mode="json")


@router.post("/v1/checkins")
def record_checkin(body: CheckInRequest, service: StreakService = Depends(get_streak_service)):
    checkin = service.record_checkin(
        body.user_id,
        body.time_of_day,
        body.date,
        mood=body.mood,
        effort_level=body.effort_level,
        has_response=body.has_response,
    )
    return checkin.model_dump(mode="json")


@router.get("/v1/checkins")
def list_checkins(
    user_id: str = Query(..., min_length=1),
    start: Optional[dt.date] = Query(default=None),
    end: Optional[dt.date] = Query(default=None),
    service: StreakService = Depends(get_streak_service),
):
    return {"checkins": [c.model_dump(mode="json") for c in service.checkins(user_id, start, end)]}


def _normalize(moment: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=dt.timezone.utc)
    return moment.astimezone(dt.timezone.utc)
