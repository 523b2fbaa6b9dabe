"""Storage layer for FieldSync."""

from fieldsync.storage.local_store import LocalStore
from fieldsync.storage.memory_backend import MemoryBackend
from fieldsync.storage.sqlite_store import SQLiteBackend

__all__ = ["LocalStore", "MemoryBackend", "SQLiteBackend"]
