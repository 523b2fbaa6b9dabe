"""Sync layer for FieldSync: remote adapters, OAuth credentials and the sync manager."""

from fieldsync.sync.credentials import (
    FileCredentialStore,
    MemoryCredentialStore,
    OAuthSession,
)
from fieldsync.sync.local_file_adapter import LocalFileAdapter
from fieldsync.sync.manager import SyncErrorItem, SyncManager, SyncResult, SyncStatus
from fieldsync.sync.scheduler import AutoSync
from fieldsync.sync.yandex_disk_adapter import YandexDiskAdapter

__all__ = [
    "AutoSync",
    "FileCredentialStore",
    "LocalFileAdapter",
    "MemoryCredentialStore",
    "OAuthSession",
    "SyncErrorItem",
    "SyncManager",
    "SyncResult",
    "SyncStatus",
    "YandexDiskAdapter",
]
