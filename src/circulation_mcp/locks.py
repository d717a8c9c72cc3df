"""
Per-title locks.

Queue and copy mutations of one title are serialized inside this process by a
re-entrant lock per title; different titles never contend. Across processes
the copy registry's compare-and-swap remains the exclusivity guarantee.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class TitleLockRegistry:
    """Hands out one ``threading.RLock`` per title id, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _lock_for(self, book_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(book_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[book_id] = lock
            return lock

    @contextmanager
    def hold(self, book_id: str) -> Iterator[None]:
        with self._lock_for(book_id):
            yield

    def __len__(self) -> int:
        return len(self._locks)
