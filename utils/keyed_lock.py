"""
Keyed In-Process Locks
One re-entrant lock per key (user id, transaction id, sequence name) so that
read-modify-write cycles on the same record are serialized while unrelated
records proceed in parallel.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Hashable

logger = logging.getLogger(__name__)


class KeyedLock:
    """Registry of per-key locks, created lazily and kept for the process lifetime"""

    def __init__(self, name: str = "keyed"):
        self.name = name
        self._locks: Dict[Hashable, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def _get(self, key: Hashable) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable):
        """Hold the lock for ``key`` for the duration of the block"""
        lock = self._get(key)
        with lock:
            logger.debug(f"🔒 {self.name}:{key} acquired")
            yield
        logger.debug(f"🔓 {self.name}:{key} released")

    @contextmanager
    def hold_many(self, *keys: Hashable):
        """Hold several keys, always in sorted order to avoid lock-order inversion"""
        ordered = sorted(set(keys), key=repr)
        locks = [self._get(k) for k in ordered]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()

    def __len__(self) -> int:
        return len(self._locks)
