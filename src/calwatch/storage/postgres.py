"""Key-value store backed by a PostgreSQL ``calwatch_kv`` table.

Each row holds one opaque value. Writes are upserts, so ``set`` is
idempotent; there is no cross-key transaction.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from calwatch.errors import StoreError

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "calwatch_kv"

_KV_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    key        TEXT PRIMARY KEY,
    value      BYTEA NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


class PostgresKVStore:
    """Async key-value store over an asyncpg pool.

    Parameters
    ----------
    pool:
        An asyncpg connection pool. The store does not own the pool unless it
        was created through :meth:`connect`.
    """

    def __init__(self, pool: asyncpg.Pool, *, owns_pool: bool = False) -> None:
        self.pool = pool
        self._owns_pool = owns_pool

    @classmethod
    async def connect(cls, dsn: str, *, min_size: int = 1, max_size: int = 5) -> PostgresKVStore:
        """Create a pool for *dsn*, ensure the table exists, and return a store."""
        import asyncpg

        try:
            pool = await asyncpg.create_pool(dsn=dsn, min_size=min_size, max_size=max_size)
        except (OSError, asyncpg.PostgresError) as exc:
            raise StoreError(f"Could not connect to key-value database: {exc}") from exc
        store = cls(pool, owns_pool=True)
        await store.ensure_schema()
        return store

    async def ensure_schema(self) -> None:
        try:
            await self.pool.execute(_KV_TABLE_DDL)
        except Exception as exc:
            raise StoreError(f"Could not create {_TABLE} table: {exc}") from exc

    async def get(self, key: str) -> bytes | None:
        try:
            value = await self.pool.fetchval(f"SELECT value FROM {_TABLE} WHERE key = $1", key)
        except Exception as exc:
            raise StoreError(f"Failed to read key {key!r}: {exc}") from exc
        if value is None:
            return None
        return bytes(value)

    async def set(self, key: str, value: bytes) -> None:
        try:
            await self.pool.execute(
                f"""
                INSERT INTO {_TABLE} (key, value, updated_at)
                VALUES ($1, $2, now())
                ON CONFLICT (key) DO UPDATE
                    SET value = EXCLUDED.value,
                        updated_at = now()
                """,
                key,
                value,
            )
        except Exception as exc:
            raise StoreError(f"Failed to write key {key!r}: {exc}") from exc
        logger.debug("Stored key %r (%d bytes)", key, len(value))

    async def delete(self, key: str) -> None:
        try:
            result = await self.pool.execute(f"DELETE FROM {_TABLE} WHERE key = $1", key)
        except Exception as exc:
            raise StoreError(f"Failed to delete key {key!r}: {exc}") from exc
        # asyncpg returns a status string like "DELETE 1" or "DELETE 0"
        if result and result.split()[-1] == "0":
            logger.debug("Key not found for deletion: %r", key)

    async def close(self) -> None:
        if self._owns_pool:
            await self.pool.close()

    def __repr__(self) -> str:
        return f"PostgresKVStore(pool={self.pool!r})"
