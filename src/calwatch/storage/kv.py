"""Key-value store boundary.

The engine treats persistence as a plain ``key -> bytes`` map. There are no
transactions across keys; callers re-read what they need on every pass.
"""

from __future__ import annotations

import asyncio
from typing import Protocol


class KVStore(Protocol):
    """Protocol for key-value storage backends."""

    async def get(self, key: str) -> bytes | None:
        """Return the value stored under *key*, or ``None`` if absent.

        Raises:
            StoreError: If the backend cannot be read.
        """
        ...

    async def set(self, key: str, value: bytes) -> None:
        """Store *value* under *key*, replacing any previous value.

        Raises:
            StoreError: If the backend cannot be written.
        """
        ...

    async def delete(self, key: str) -> None:
        """Remove *key*; a missing key is not an error."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...


class MemoryKVStore:
    """Process-local store, used for development and tests."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        async with self._lock:
            self._data[key] = bytes(value)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def close(self) -> None:
        return None

    def keys(self) -> list[str]:
        return sorted(self._data)

    def __repr__(self) -> str:
        return f"MemoryKVStore(keys={len(self._data)})"
