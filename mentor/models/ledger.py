"""
mentor/models/ledger.py

Canonical in-memory representation of ledger facts. Both stores read and
write these through the codecs in mentor.features.storage.codecs; there is
no separate local/remote model hierarchy.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

EntrySource = Literal["local", "remote"]
BankTransactionKind = Literal["grant", "consume"]
TimeOfDay = Literal["morning", "evening"]
Mood = Literal["low", "neutral", "good", "great", "excellent"]

ENTITY_LEDGER_ENTRY = "ledger_entry"
ENTITY_BANK_TRANSACTION = "bank_transaction"
ENTITY_CHECKIN = "checkin"
ENTITY_STREAK_STATE = "streak_state"
ENTITY_SYNC_CURSOR = "sync_cursor"

# Entity types that are pulled/pushed and therefore carry a sync cursor.
SYNCED_ENTITY_TYPES = (ENTITY_LEDGER_ENTRY, ENTITY_BANK_TRANSACTION, ENTITY_CHECKIN)


class LedgerEntry(BaseModel):
    """One fact about one calendar day for one user."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    date: date
    completed: bool
    challenge_ref: Optional[str] = None
    effort_level: Optional[int] = Field(default=None, ge=1, le=5)
    skip_reason: Optional[str] = None
    note: Optional[str] = None
    recorded_at: datetime
    source: EntrySource = "local"
    remote_updated_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return self.date.isoformat()

    @property
    def pending_push(self) -> bool:
        return self.source == "local" and self.remote_updated_at is None

    def richness(self) -> int:
        """Completed records with more detail rank higher on recorded_at ties."""
        score = 0
        if self.completed:
            score += 10
        for value in (self.effort_level, self.challenge_ref, self.note):
            if value is not None:
                score += 1
        return score

    def same_payload(self, other: "LedgerEntry") -> bool:
        return (
            self.user_id == other.user_id
            and self.date == other.date
            and self.completed == other.completed
            and self.challenge_ref == other.challenge_ref
            and self.effort_level == other.effort_level
            and self.skip_reason == other.skip_reason
            and self.note == other.note
        )


class StreakBankTransaction(BaseModel):
    """A bank-day grant or a bank-day consumption covering one missed date."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    user_id: str = Field(min_length=1)
    kind: BankTransactionKind
    days: int = Field(default=1, ge=1)
    covered_date: Optional[date] = None
    reason: Optional[str] = None
    recorded_at: datetime
    source: EntrySource = "local"
    remote_updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_kind(self) -> "StreakBankTransaction":
        if self.kind == "consume" and (self.covered_date is None or self.days != 1):
            raise ValueError("consume transactions cover exactly one date")
        if self.kind == "grant" and self.covered_date is not None:
            raise ValueError("grant transactions do not cover a date")
        return self

    @property
    def key(self) -> str:
        return self.transaction_id

    @property
    def pending_push(self) -> bool:
        return self.source == "local" and self.remote_updated_at is None


class CheckIn(BaseModel):
    """Morning/evening check-in; only the mood/effort signal is kept here."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    date: date
    time_of_day: TimeOfDay
    mood: Optional[Mood] = None
    effort_level: Optional[int] = Field(default=None, ge=1, le=5)
    has_response: bool = False
    recorded_at: datetime
    source: EntrySource = "local"
    remote_updated_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return f"{self.date.isoformat()}:{self.time_of_day}"

    @property
    def pending_push(self) -> bool:
        return self.source == "local" and self.remote_updated_at is None


class StreakState(BaseModel):
    """Derived, cached streak summary. Never authoritative on its own."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    current_streak: int = Field(default=0, ge=0)
    longest_streak: int = Field(default=0, ge=0)
    last_computed_date: Optional[date] = None
    streak_bank_days: int = Field(default=0, ge=0)
    computed_at: Optional[datetime] = None
    # Highest current_streak cached since the last reconciliation; the bank-protection baseline.
    peak_since_sync: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _longest_covers_current(self) -> "StreakState":
        if self.longest_streak < self.current_streak:
            raise ValueError("longest_streak must be >= current_streak")
        return self

    def counters(self) -> tuple:
        return (self.current_streak, self.longest_streak, self.streak_bank_days)


class SyncCursor(BaseModel):
    """Watermark of the last reconciled remote updated_at per entity type."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    entity_type: str
    cursor: Optional[datetime] = None
    updated_at: Optional[datetime] = None
