"""
In-process keyed locks.

Serializes session creation per participant inside one process. Across
processes the partial unique indexes on consultation_sessions take over.
"""

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Generator, Iterable, List

logger = logging.getLogger(__name__)


class KeyedLockRegistry:
    """Reference-counted registry of per-key locks"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refcounts: Dict[str, int] = defaultdict(int)

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            self._refcounts[key] += 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            self._refcounts[key] -= 1
            if self._refcounts[key] <= 0:
                self._refcounts.pop(key, None)
                self._locks.pop(key, None)

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Generator[List[str], None, None]:
        """
        Acquire every key's lock in sorted order, release in reverse.

        Sorted acquisition keeps two callers locking overlapping key sets
        from deadlocking each other.
        """
        ordered = sorted(set(keys))
        acquired: List[str] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                lock.acquire()
                acquired.append(key)
            yield ordered
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._checkin(key)


participant_locks = KeyedLockRegistry()


def participant_keys(patient_id: int, doctor_id=None) -> List[str]:
    keys = [f"patient:{patient_id}"]
    if doctor_id is not None:
        keys.append(f"doctor:{doctor_id}")
    return keys
