"""Injectable time sources. Nothing in the reminders package reads the wall clock directly."""
from datetime import datetime, timedelta, timezone as dt_timezone
import threading
from typing import Protocol

from followup.utils.timezone import to_utc_aware


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(dt_timezone.utc)


class FixedClock:
    """Manually advanced clock for tests and simulations."""

    def __init__(self, start: datetime):
        self._now = to_utc_aware(start)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: timedelta | None = None, **kwargs) -> datetime:
        step = delta if delta is not None else timedelta(**kwargs)
        with self._lock:
            self._now = self._now + step
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = to_utc_aware(value)
