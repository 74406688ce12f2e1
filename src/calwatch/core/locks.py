"""Per-key asyncio locks and in-flight suppression."""

from __future__ import annotations

import asyncio


class KeyedLocks:
    """Hands out one :class:`asyncio.Lock` per key.

    Different keys never share a lock. Locks are created lazily and kept
    for the life of the registry; the key space is the set of connected
    users, so it stays small.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def discard(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]


class InFlight:
    """Tracks keys with an operation in progress.

    ``claim`` returns False when the key is already claimed; the caller
    then skips the operation instead of waiting for it.
    """

    def __init__(self) -> None:
        self._keys: set[str] = set()

    def claim(self, key: str) -> bool:
        if key in self._keys:
            return False
        self._keys.add(key)
        return True

    def release(self, key: str) -> None:
        self._keys.discard(key)
