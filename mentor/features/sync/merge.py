"""
Pure merge rules for reconciliation.

Every resolution is a total order over the two candidates, so the outcome
does not depend on which side is processed first:

    ledger entries  (recorded_at, richness, source == "local")
    check-ins       (recorded_at, source == "local")
    bank            union by transaction id
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from mentor.models.ledger import CheckIn, LedgerEntry, StreakBankTransaction


@dataclass
class MergeResult:
    # Records that must be written to the local store.
    adopted: list = field(default_factory=list)
    resolved_ties: List[str] = field(default_factory=list)


def entry_rank(entry: LedgerEntry) -> Tuple:
    return (entry.recorded_at, entry.richness(), entry.source == "local")


def checkin_rank(checkin: CheckIn) -> Tuple:
    return (checkin.recorded_at, checkin.source == "local")


def pick_entry(a: LedgerEntry, b: LedgerEntry) -> LedgerEntry:
    """Winner between two entries for the same day; symmetric in its arguments."""
    rank_a, rank_b = entry_rank(a), entry_rank(b)
    if rank_a != rank_b:
        return a if rank_a > rank_b else b
    # Identical rank means the same side twice; keep the freshest remote stamp.
    stamp_a = a.remote_updated_at.timestamp() if a.remote_updated_at else 0.0
    stamp_b = b.remote_updated_at.timestamp() if b.remote_updated_at else 0.0
    return a if stamp_a >= stamp_b else b


def merge_entries(local: Dict[date, LedgerEntry], remote: Iterable[LedgerEntry]) -> MergeResult:
    result = MergeResult()
    for incoming in remote:
        current = local.get(incoming.date)
        if current is None:
            result.adopted.append(incoming)
            local[incoming.date] = incoming
            continue

        winner = pick_entry(current, incoming)
        # Only report ties that fell through to the source order.
        if entry_rank(current)[:2] == entry_rank(incoming)[:2] and not current.same_payload(incoming):
            result.resolved_ties.append(f"ledger_entry:{incoming.key}")
        if winner is incoming and incoming != current:
            result.adopted.append(incoming)
            local[incoming.date] = incoming
        elif current.pending_push and current.recorded_at == incoming.recorded_at and current.same_payload(incoming):
            pushed = current.model_copy(update={"remote_updated_at": incoming.remote_updated_at})
            result.adopted.append(pushed)
            local[incoming.date] = pushed
    return result


def merge_checkins(local: Dict[str, CheckIn], remote: Iterable[CheckIn]) -> MergeResult:
    result = MergeResult()
    for incoming in remote:
        current = local.get(incoming.key)
        if current is None or checkin_rank(incoming) > checkin_rank(current):
            result.adopted.append(incoming)
            local[incoming.key] = incoming
        elif current.recorded_at == incoming.recorded_at and current.source == "local" and current.remote_updated_at is None:
            # Same write already on the server: record that it has been pushed.
            pushed = current.model_copy(update={"remote_updated_at": incoming.remote_updated_at})
            result.adopted.append(pushed)
            local[incoming.key] = pushed
    return result


def merge_bank(local: Dict[str, StreakBankTransaction], remote: Iterable[StreakBankTransaction]) -> MergeResult:
    result = MergeResult()
    for incoming in remote:
        current: Optional[StreakBankTransaction] = local.get(incoming.transaction_id)
        if current is None:
            result.adopted.append(incoming)
            local[incoming.transaction_id] = incoming
        elif current.remote_updated_at is None:
            pushed = current.model_copy(update={"remote_updated_at": incoming.remote_updated_at})
            result.adopted.append(pushed)
            local[incoming.transaction_id] = pushed
    return result
