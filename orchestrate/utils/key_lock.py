# orchestrate/utils/key_lock.py
import threading
from contextlib import contextmanager
from typing import Dict, Hashable


class KeyedLock:
    """
    A registry of mutexes, one per key.

    Holders of the same key run one at a time; different keys never contend.
    A key's mutex is dropped once nobody holds or waits for it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]

    def is_held(self, key: Hashable) -> bool:
        with self._guard:
            return key in self._locks
