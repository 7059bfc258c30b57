"""
Injectable clock.

Every service and scheduler job takes a clock instead of calling datetime.utcnow()
directly, so elapsed session time can be simulated in tests.
"""

import threading
from datetime import datetime, timedelta
from typing import Optional

from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now


class Clock:
    """Source of naive UTC 'now'"""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return get_naive_utc_now()


class FrozenClock(Clock):
    """Clock that only moves when told to"""

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_naive_datetime(start) if start else get_naive_utc_now().replace(microsecond=0)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **delta) -> datetime:
        """Move forward by timedelta keyword arguments, e.g. advance(minutes=12)"""
        with self._lock:
            self._now = self._now + timedelta(**delta)
            return self._now

    def set(self, moment: datetime) -> None:
        with self._lock:
            self._now = ensure_naive_datetime(moment)


system_clock = SystemClock()
