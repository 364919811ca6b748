from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from mentor.models.ledger import StreakState


class SyncPhase(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"
    STALLED = "stalled"
    # Reserved: the merge rules resolve every tie today.
    CONFLICT = "conflict"


class SyncStatus(BaseModel):
    """Observable sync state for one user."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    phase: SyncPhase = SyncPhase.IDLE
    reason: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
    consecutive_failures: int = Field(default=0, ge=0)
    next_retry_at: Optional[datetime] = None
    conflicts: List[str] = Field(default_factory=list)
    clock_skew_days: Optional[int] = None


@dataclass
class SyncReport:
    """What a single reconciliation pass did."""

    user_id: str
    pulled: int = 0
    pushed: int = 0
    adopted_remote: int = 0
    bank_days_applied: List[date] = field(default_factory=list)
    resolved_ties: List[str] = field(default_factory=list)
    remote_counter_discarded: bool = False
    clock_skew_days: Optional[int] = None
    state: Optional[StreakState] = None
