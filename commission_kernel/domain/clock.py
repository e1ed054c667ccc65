"""
Injectable time source.

Services never read the wall clock directly. The collection idempotency key
and transfer group embed the UTC calendar day, and the card confirmation
window is measured from ``now()``, so tests pin both through
``DeterministicClock``.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...

    def today(self) -> date: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return self.now().date()


class DeterministicClock:
    """Frozen at noon UTC on 2024-01-01 unless told otherwise; moves only when advanced."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def today(self) -> date:
        return self._now.astimezone(timezone.utc).date()

    def advance(self, seconds: int = 1) -> None:
        self._now += timedelta(seconds=seconds)

    def advance_days(self, days: int = 1) -> None:
        self._now += timedelta(days=days)
