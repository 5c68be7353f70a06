"""In-process mutual exclusion keyed by subscription or company id."""
from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterator, List


class SubscriptionLockRegistry:
    """Hands out one lock per key and forgets it once nobody holds it.

    Entries are reference-counted so the registry does not grow with every
    subscription id it has ever seen.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: Dict[str, List] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        lock: Lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)


__all__ = ["SubscriptionLockRegistry"]
