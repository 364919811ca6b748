"""SQL local store over an in-memory SQLite engine."""

from datetime import date, timedelta

import pytest

from mentor.core.errors import DuplicateEntryError
from mentor.features.streaks.service import StreakService
from mentor.models.ledger import ENTITY_LEDGER_ENTRY


def test_put_get_overwrite(sql_store):
    sql_store.put("u1", ENTITY_LEDGER_ENTRY, "2026-03-09", {"v": 1}, date(2026, 3, 9))
    sql_store.put("u1", ENTITY_LEDGER_ENTRY, "2026-03-09", {"v": 2}, date(2026, 3, 9))

    assert sql_store.get("u1", ENTITY_LEDGER_ENTRY, "2026-03-09") == {"v": 2}
    assert sql_store.get("u2", ENTITY_LEDGER_ENTRY, "2026-03-09") is None


def test_query_range_is_inclusive_and_ordered(sql_store):
    base = date(2026, 3, 1)
    for offset in (4, 0, 2, 6):
        day = base + timedelta(days=offset)
        sql_store.put("u1", ENTITY_LEDGER_ENTRY, day.isoformat(), {"day": day.isoformat()}, day)

    rows = sql_store.query("u1", ENTITY_LEDGER_ENTRY, base + timedelta(days=2), base + timedelta(days=6))

    assert [row["day"] for row in rows] == ["2026-03-03", "2026-03-05", "2026-03-07"]


def test_delete(sql_store):
    sql_store.put("u1", "checkin", "k", {"x": 1})

    assert sql_store.delete("u1", "checkin", "k") is True
    assert sql_store.delete("u1", "checkin", "k") is False


def test_transaction_rolls_back_as_a_unit(sql_store):
    with pytest.raises(RuntimeError):
        with sql_store.transaction("u1"):
            sql_store.put("u1", "checkin", "a", {"x": 1})
            sql_store.put("u1", "checkin", "b", {"x": 2})
            raise RuntimeError("interrupted")

    assert sql_store.query("u1", "checkin") == []


def test_service_on_sql_store(sql_store, remote, clock, today):
    service = StreakService(sql_store, remote, clock)
    service.complete_challenge("u1", today - timedelta(days=1), effort_level=4)
    service.complete_challenge("u1", challenge_ref="c1")

    with pytest.raises(DuplicateEntryError):
        service.skip_challenge("u1", "late", recorded_at=clock.now() - timedelta(hours=1))

    state = service.current_progress("u1")
    assert state.current_streak == 2
    assert [e.effort_level for e in service.history("u1")] == [4, None]
