from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


def session_key(session_id: int) -> tuple[str, int]:
    return ("session", session_id)


def user_key(user_id: int) -> tuple[str, int]:
    return ("user", user_id)


class KeyedLocks:
    """Process-local mutual exclusion per aggregate key.

    Callers take the session key first and user keys in ascending id order.
    Entries are reference counted and dropped once nobody holds or waits.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}
        self._refs: dict[Hashable, int] = {}

    def _acquire(self, key: Hashable) -> None:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            self._refs[key] = self._refs.get(key, 0) + 1
        lock.acquire()

    def _release(self, key: Hashable) -> None:
        with self._guard:
            lock = self._locks[key]
            lock.release()
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: Hashable) -> Iterator[None]:
        ordered = list(dict.fromkeys(keys))
        taken: list[Hashable] = []
        try:
            for key in ordered:
                self._acquire(key)
                taken.append(key)
            yield
        finally:
            for key in reversed(taken):
                self._release(key)

    def held_keys(self) -> set[Hashable]:
        with self._guard:
            return set(self._locks)
