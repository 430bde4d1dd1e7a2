from datetime import date, datetime, timedelta, timezone


class SystemClock:
    """Wall clock in UTC. Due dates are compared against the UTC calendar date."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return self.now().date()


class FixedClock(SystemClock):
    def __init__(self, now: datetime):
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        self._now = now

    def advance(self, days: int = 0, **kwargs) -> None:
        self._now = self._now + timedelta(days=days, **kwargs)
