"""Reference clock for challenge day boundaries.

Every "today" and "yesterday" in the service comes from one clock bound to
one canonical timezone, so the scheduler and ad hoc requests agree on which
challenge is current.
"""

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo


class ReferenceClock:
    """Wall clock that reports calendar days in a fixed reference timezone."""

    def __init__(self, timezone_name: str = "America/New_York") -> None:
        self.tz = ZoneInfo(timezone_name)

    def now(self) -> datetime:
        """Current instant, timezone-aware UTC."""
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return self.now().astimezone(self.tz).date()

    def yesterday(self) -> date:
        return self.today() - timedelta(days=1)

    def day_start(self, day: date) -> datetime:
        """Midnight of ``day`` in the reference timezone, as UTC."""
        local_midnight = datetime(day.year, day.month, day.day, tzinfo=self.tz)
        return local_midnight.astimezone(timezone.utc)


class FixedClock(ReferenceClock):
    """Clock pinned to one instant; used by tests and backfills."""

    def __init__(self, instant: datetime, timezone_name: str = "America/New_York") -> None:
        super().__init__(timezone_name)
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self.instant = instant

    def now(self) -> datetime:
        return self.instant
