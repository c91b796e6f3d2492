"""Identity-keyed mutual exclusion.

One lock per key, created on first use and kept for the life of the arena,
so unrelated APIs never wait on each other.
"""

import threading
from contextlib import contextmanager


class KeyedLocks:
    """Arena of locks keyed by resource identity."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, *keys: str):
        """Hold the locks for every key for the duration of the block.

        Keys are acquired in sorted order so two callers asking for the same
        set of keys cannot deadlock.
        """
        acquired: list[threading.Lock] = []
        try:
            for key in sorted(set(keys)):
                lock = self.lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def api_key(api_id: str) -> str:
    return f"api:{api_id}"


def association_key(product_id: str, api_id: str) -> str:
    return f"product-api:{product_id}:{api_id}"


def product_key(product_id: str) -> str:
    return f"product:{product_id}"
