"""Clock abstraction so lease expiry can be driven deterministically in tests."""
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Return a timezone-aware UTC timestamp."""


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)
