"""
Serialization adapters at the two store boundaries.

Local rows are the JSON dump of the canonical model. Remote rows follow the
hosted schema's snake_case columns (is_completed, completed_at, ...) and get
their source/remote_updated_at from the server's updated_at.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from mentor.core.clock import truncate_ms
from mentor.models.ledger import (
    CheckIn,
    LedgerEntry,
    StreakBankTransaction,
    StreakState,
    SyncCursor,
)


def format_ts(moment: Optional[datetime]) -> Optional[str]:
    if moment is None:
        return None
    return truncate_ms(moment).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_ts(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        moment = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return truncate_ms(moment)


def parse_day(value: Any) -> date:
    if isinstance(value, datetime):
        raise ValueError("ledger days are date-only values")
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


# Local boundary ---------------------------------------------------------

def to_local_row(model) -> Dict[str, Any]:
    return model.model_dump(mode="json")


def entry_from_local(row: Dict[str, Any]) -> LedgerEntry:
    return LedgerEntry.model_validate(row)


def bank_from_local(row: Dict[str, Any]) -> StreakBankTransaction:
    return StreakBankTransaction.model_validate(row)


def checkin_from_local(row: Dict[str, Any]) -> CheckIn:
    return CheckIn.model_validate(row)


def state_from_local(row: Dict[str, Any]) -> StreakState:
    return StreakState.model_validate(row)


def cursor_from_local(row: Dict[str, Any]) -> SyncCursor:
    return SyncCursor.model_validate(row)


# Remote boundary --------------------------------------------------------

def entry_to_remote(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "user_id": entry.user_id,
        "date": entry.date.isoformat(),
        "is_completed": entry.completed,
        "completed_at": format_ts(entry.recorded_at) if entry.completed else None,
        "challenge_ref": entry.challenge_ref,
        "effort_level": entry.effort_level,
        "skip_reason": entry.skip_reason,
        "note": entry.note,
        "recorded_at": format_ts(entry.recorded_at),
    }


def entry_from_remote(row: Dict[str, Any]) -> LedgerEntry:
    # Rows written before recorded_at existed fall back to completed_at/updated_at.
    recorded_at = parse_ts(row.get("recorded_at")) or parse_ts(row.get("completed_at")) or parse_ts(row.get("updated_at"))
    return LedgerEntry(
        user_id=row["user_id"],
        date=parse_day(row["date"]),
        completed=bool(row.get("is_completed")),
        challenge_ref=row.get("challenge_ref"),
        effort_level=row.get("effort_level"),
        skip_reason=row.get("skip_reason"),
        note=row.get("note"),
        recorded_at=recorded_at,
        source="remote",
        remote_updated_at=parse_ts(row.get("updated_at")),
    )


def bank_to_remote(txn: StreakBankTransaction) -> Dict[str, Any]:
    return {
        "id": txn.transaction_id,
        "user_id": txn.user_id,
        "kind": txn.kind,
        "days": txn.days,
        "covered_date": txn.covered_date.isoformat() if txn.covered_date else None,
        "reason": txn.reason,
        "recorded_at": format_ts(txn.recorded_at),
    }


def bank_from_remote(row: Dict[str, Any]) -> StreakBankTransaction:
    covered = row.get("covered_date")
    return StreakBankTransaction(
        transaction_id=str(row["id"]),
        user_id=row["user_id"],
        kind=row["kind"],
        days=int(row.get("days") or 1),
        covered_date=parse_day(covered) if covered else None,
        reason=row.get("reason"),
        recorded_at=parse_ts(row.get("recorded_at")) or parse_ts(row.get("updated_at")),
        source="remote",
        remote_updated_at=parse_ts(row.get("updated_at")),
    )


def checkin_to_remote(checkin: CheckIn) -> Dict[str, Any]:
    return {
        "user_id": checkin.user_id,
        "date": checkin.date.isoformat(),
        "time_of_day": checkin.time_of_day,
        "mood": checkin.mood,
        "effort_level": checkin.effort_level,
        "has_response": checkin.has_response,
        "recorded_at": format_ts(checkin.recorded_at),
    }


def checkin_from_remote(row: Dict[str, Any]) -> CheckIn:
    return CheckIn(
        user_id=row["user_id"],
        date=parse_day(row["date"]),
        time_of_day=row["time_of_day"],
        mood=row.get("mood"),
        effort_level=row.get("effort_level"),
        has_response=bool(row.get("has_response")),
        recorded_at=parse_ts(row.get("recorded_at")) or parse_ts(row.get("updated_at")),
        source="remote",
        remote_updated_at=parse_ts(row.get("updated_at")),
    )


def state_to_remote(state: StreakState) -> Dict[str, Any]:
    return {
        "user_id": state.user_id,
        "current_streak": state.current_streak,
        "longest_streak": state.longest_streak,
        "streak_bank_days": state.streak_bank_days,
    }


def remote_counters(row: Optional[Dict[str, Any]]) -> Optional[tuple]:
    """(current, longest, bank) as stored remotely; read for logging only."""
    if not row:
        return None
    return (
        int(row.get("current_streak") or 0),
        int(row.get("longest_streak") or 0),
        int(row.get("streak_bank_days") or 0),
    )
