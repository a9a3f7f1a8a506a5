"""Injectable source of "today".

Every date comparison in the lending engine (due dates, overdue sweep,
return dates) goes through a ``Clock`` so tests can pin the calendar.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        ...

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now()


class FixedClock(Clock):
    """Test clock pinned to one instant; ``advance`` moves it forward."""

    def __init__(self, current: datetime | date) -> None:
        if not isinstance(current, datetime):
            current = datetime(current.year, current.month, current.day, 9, 0, 0)
        self._current = current

    def now(self) -> datetime:
        return self._current

    def advance(self, days: int = 0, seconds: int = 0) -> None:
        self._current = self._current + timedelta(days=days, seconds=seconds)


DEFAULT_CLOCK = SystemClock()
