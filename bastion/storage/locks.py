from __future__ import annotations

import contextlib
import threading
from typing import Dict, Iterator


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.holders = 0


class KeyedLocks:
    """Registry of re-entrant locks, one per key.

    Entries are reference counted and dropped once the last holder (or
    waiter) releases them, so keys chosen by callers do not accumulate.
    Callers hold at most one key at a time, so lock ordering never matters.
    Work that may be slow (password hashing) must happen outside ``hold``.
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, _Entry] = {}

    def _acquire_entry(self, key: str) -> _Entry:
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = _Entry()
                self._locks[key] = entry
            entry.holders += 1
            return entry

    def _release_entry(self, key: str, entry: _Entry) -> None:
        with self._registry_lock:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[key]

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        entry = self._acquire_entry(key)
        try:
            with entry.lock:
                yield
        finally:
            self._release_entry(key, entry)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)
