"""
Clock and timezone source.

A "day" is the user's local calendar day at the moment of the action. It is
captured once through Clock.today() and stored as a date; nothing downstream
reinterprets it in another timezone.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Dict, Optional, Protocol
from zoneinfo import ZoneInfo

from mentor.core.config import settings


def truncate_ms(moment: datetime) -> datetime:
    """Drop sub-millisecond precision so recorded_at compares the same on both stores."""
    aware = moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)
    aware = aware.astimezone(timezone.utc)
    return aware.replace(microsecond=(aware.microsecond // 1000) * 1000)


class Clock(Protocol):
    def now(self) -> datetime:
        """Current instant, timezone-aware UTC."""
        ...

    def local_now(self, user_id: str) -> datetime:
        """Current instant in the user's timezone."""
        ...

    def today(self, user_id: str) -> date:
        """The user's local calendar day."""
        ...


class SystemClock:
    """Wall clock with per-user timezones (IANA names)."""

    def __init__(self, timezones: Optional[Dict[str, str]] = None, default_tz: Optional[str] = None):
        self._timezones: Dict[str, str] = dict(timezones or {})
        self._default_tz = default_tz or settings.DEFAULT_TIMEZONE

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def local_now(self, user_id: str) -> datetime:
        tz = ZoneInfo(self._timezones.get(user_id, self._default_tz))
        return self.now().astimezone(tz)

    def today(self, user_id: str) -> date:
        return self.local_now(user_id).date()


class FixedClock:
    """Manually advanced clock for deterministic tests and replays."""

    def __init__(self, now: datetime, tz_name: str = "UTC"):
        self._now = now if now.tzinfo else now.replace(tzinfo=timezone.utc)
        self._tz = ZoneInfo(tz_name)

    def now(self) -> datetime:
        return self._now.astimezone(timezone.utc)

    def local_now(self, user_id: str) -> datetime:
        return self._now.astimezone(self._tz)

    def today(self, user_id: str) -> date:
        return self.local_now(user_id).date()

    def set(self, now: datetime) -> None:
        self._now = now if now.tzinfo else now.replace(tzinfo=timezone.utc)

    def advance(self, **delta) -> None:
        self._now = self._now + timedelta(**delta)
