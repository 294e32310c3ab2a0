"""Test doubles shared across test modules."""

from datetime import datetime, timedelta, timezone

# 2023-11-14T22:13:20Z
FIXED_EPOCH = 1700000000
FIXED_NOW = datetime.fromtimestamp(FIXED_EPOCH, tz=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now
