"""
Identifier and Clock Module

Record ids and timestamps are injected into every ledger component so that
tests can pin them down.
"""

import itertools
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


class IdGenerator:
    """Base id generator"""

    def next_id(self, kind: str) -> str:
        raise NotImplementedError


class UuidIdGenerator(IdGenerator):
    """Random UUID4 ids, the production default"""

    def next_id(self, kind: str) -> str:
        return str(uuid.uuid4())


class SequentialIdGenerator(IdGenerator):
    """
    Deterministic ids of the form ``<kind>-000001``

    Each kind has its own counter, so ``next_id("loan")`` and
    ``next_id("txn")`` both start at 1.
    """

    def __init__(self, width: int = 6):
        self.width = width
        self._counters: Dict[str, itertools.count] = {}
        self._lock = threading.Lock()

    def next_id(self, kind: str) -> str:
        with self._lock:
            counter = self._counters.setdefault(kind, itertools.count(1))
            return f"{kind}-{next(counter):0{self.width}d}"


class Clock:
    """Base clock returning timezone-aware UTC datetimes"""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock frozen at a given instant until moved explicitly"""

    def __init__(self, at: Optional[datetime] = None):
        self._now = at or datetime(2024, 1, 1, tzinfo=timezone.utc)
        if self._now.tzinfo is None:
            self._now = self._now.replace(tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, at: datetime) -> None:
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        with self._lock:
            self._now = at

    def advance(self, **kwargs) -> datetime:
        """Move forward by ``timedelta(**kwargs)`` and return the new time"""
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now
