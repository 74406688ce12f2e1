"""Key-value storage backends and typed per-user records."""

from calwatch.storage.kv import KVStore, MemoryKVStore
from calwatch.storage.postgres import PostgresKVStore
from calwatch.storage.records import UserRecordStore

__all__ = ["KVStore", "MemoryKVStore", "PostgresKVStore", "UserRecordStore"]
