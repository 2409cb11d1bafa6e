"""Per-key in-process locks.

Serializes read-modify-write of shared records (regime state per ticker,
rule statistics per rule id) inside one worker process. Cross-process
safety comes from row locks and atomic updates in the database.
"""
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator


class KeyedLock:
    """Registry of one lock per key."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the lock for a single key."""
        lock = self._lock_for(key)
        with lock:
            yield

    @contextmanager
    def hold_many(self, keys: Iterable[str]) -> Iterator[None]:
        """Hold locks for several keys, acquired in sorted order."""
        locks = [self._lock_for(k) for k in sorted(set(keys))]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Process-wide registries
ticker_locks = KeyedLock()
rule_locks = KeyedLock()
