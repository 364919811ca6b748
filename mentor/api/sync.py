from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from mentor.api.streaks import get_streak_service
from mentor.features.streaks.service import StreakService

router = APIRouter()


class SyncTriggerRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    reason: str = Field(default="manual")


class SignOutRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


@router.post("/v1/sync")
async def trigger_sync(body: SyncTriggerRequest, service: StreakService = Depends(get_streak_service)):
    """Run (or join) a sync for the user. Failures show up on the returned status, not as an HTTP error."""
    status = await service.trigger_sync(body.user_id, body.reason)
    return status.model_dump(mode="json")


@router.get("/v1/sync/status")
def get_sync_status(user_id: str = Query(..., min_length=1), service: StreakService = Depends(get_streak_service)):
    return service.sync_status(user_id).model_dump(mode="json")


@router.post("/v1/session/sign-out")
async def sign_out(body: SignOutRequest, service: StreakService = Depends(get_streak_service)):
    cancelled = await service.sign_out(body.user_id)
    return {"signed_out": True, "sync_cancelled": cancelled}
