"""Per-entity mutual exclusion.

Billing cycles are serialized per subscription and invoice mutations per
invoice. Inside a process this is a lock keyed by entity id; across processes
the guarded code additionally takes a ``SELECT ... FOR UPDATE`` row lock.
"""

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager


class KeyedLock:
    def __init__(self, name: str):
        self.name = name
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        key = str(key)
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    # Nobody else references this lock; drop it.
                    del self._waiters[key]
                    del self._locks[key]

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)


subscription_locks = KeyedLock("subscription")
invoice_locks = KeyedLock("invoice")
