"""
Per-key mutual exclusion.

Provides a registry of locks keyed by an arbitrary hashable value so that
work on one account (or one duplicate group) is serialized without blocking
work on any other.
"""

from __future__ import annotations

import threading
from collections.abc import Generator, Hashable
from contextlib import contextmanager


class KeyedLock:
    """
    A lock per key, created on demand and discarded when no longer held.

    Usage:
        locks = KeyedLock()

        with locks.hold("account-42"):
            ...  # only one thread at a time for "account-42"
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Generator[None, None, None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Args:
            key: Identifier of the resource being protected
        """
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
                    del self._waiters[key]
                    del self._locks[key]

    def is_held(self, key: Hashable) -> bool:
        """Return True if some caller currently holds or waits on ``key``."""
        with self._guard:
            return key in self._locks
