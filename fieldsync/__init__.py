"""
FieldSync - Offline-first record sync for field inspection data.

Records are kept in a local store that always works, changes are queued,
and a sync manager replicates them to a remote file store (Yandex Disk or
a shared folder) whenever it is reachable.
"""

from fieldsync.config import Config
from fieldsync.core.records import RecordRepository
from fieldsync.models import CollectionName, Envelope, QueueEntry
from fieldsync.storage.local_store import LocalStore
from fieldsync.sync.manager import SyncManager, SyncResult, SyncStatus

__version__ = "0.1.0"
__all__ = [
    "CollectionName",
    "Config",
    "Envelope",
    "LocalStore",
    "QueueEntry",
    "RecordRepository",
    "SyncManager",
    "SyncResult",
    "SyncStatus",
]
