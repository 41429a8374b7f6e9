"""
Injectable time source.

Services receive a Clock instead of calling ``datetime.now()`` so that the
yearly grant reset can be exercised deterministically in tests.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):

    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""
        ...

    def current_year(self) -> int:
        return self.now().year


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """
    Test clock that only moves when told to.

    Defaults to 2024-06-01 12:00 UTC.
    """

    def __init__(self, fixed_time: Optional[datetime] = None):
        self._time = fixed_time or datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._time

    def set_time(self, time: datetime) -> None:
        self._time = time

    def advance(self, seconds: float = 1) -> None:
        self._time = self._time + timedelta(seconds=seconds)

    def advance_years(self, years: int = 1) -> None:
        self._time = self._time.replace(year=self._time.year + years)
