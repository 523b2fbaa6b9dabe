"""
Local Store for FieldSync.

The always-available cache of domain records plus the mutation queue.
Runs on SQLite; if the database cannot be opened it falls back to an
in-process backend so the application keeps working (losing durability
across restarts while degraded).
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from fieldsync.errors import StorageFault
from fieldsync.models import (
    CollectionName,
    Envelope,
    MutationAction,
    MutationStatus,
    QUEUE_COLLECTION,
    QueueEntry,
    SyncMetadata,
    utc_now,
)
from fieldsync.storage.backend import StorageBackend
from fieldsync.storage.memory_backend import MemoryBackend
from fieldsync.storage.sqlite_store import SQLiteBackend

logger = logging.getLogger(__name__)

SYNC_METADATA_KEY = "sync_metadata"
SNAPSHOT_FORMAT_VERSION = "1.0"


class LocalStore:
    """Record collections and the mutation queue on top of a storage backend."""

    def __init__(
        self,
        db_path: Optional[Path] = None,
        backend: Optional[StorageBackend] = None,
        fallback: bool = True,
    ):
        """
        Initialize the local store.

        Args:
            db_path: SQLite file to use as the primary medium
            backend: Explicit backend (takes precedence over db_path)
            fallback: Switch to the in-memory backend if db_path cannot be opened

        Raises:
            StorageFault: If db_path cannot be opened and fallback is disabled
        """
        self.degraded = False

        if backend is not None:
            self.backend = backend
        elif db_path is None:
            self.backend = MemoryBackend()
        else:
            try:
                self.backend = SQLiteBackend(db_path)
            except StorageFault as e:
                if not fallback:
                    raise
                logger.warning(
                    f"Local database unavailable ({e}); using in-memory storage. "
                    "Changes will not survive a restart."
                )
                self.backend = MemoryBackend()
                self.degraded = True

    # ========== Record Operations ==========

    def get(self, collection: str, record_id: str) -> Optional[Envelope]:
        """Get a record by id, or None if it does not exist."""
        data = self.backend.get_record(self._check_collection(collection), record_id)
        if data is None:
            return None
        return self._to_envelope(data)

    def put(self, collection: str, envelope: Envelope) -> None:
        """Insert or replace a record (upsert by id)."""
        self.backend.put_record(self._check_collection(collection), envelope.id, envelope.to_wire())

    def list(self, collection: str) -> List[Envelope]:
        """List all records of a collection."""
        rows = self.backend.list_records(self._check_collection(collection))
        return [self._to_envelope(row) for row in rows]

    def delete(self, collection: str, record_id: str) -> bool:
        """Delete a record. Returns True if it existed."""
        return self.backend.delete_record(self._check_collection(collection), record_id)

    def clear_collection(self, collection: str) -> int:
        """Delete every record of a collection."""
        count = self.backend.clear_collection(self._check_collection(collection))
        logger.info(f"Cleared {count} record(s) from {collection}")
        return count

    # ========== Mutation Queue ==========

    def enqueue_mutation(
        self,
        action: MutationAction,
        path: str,
        envelope: Optional[Envelope] = None,
    ) -> str:
        """
        Append an outbound change to the mutation queue.

        The entry is committed before this returns.

        Returns:
            The new queue entry id
        """
        entry = QueueEntry(
            action=MutationAction(action),
            path=path,
            payload=envelope if action != MutationAction.DELETE else None,
        )
        self.backend.append_queue_entry(entry.to_wire())
        logger.debug(f"Queued {entry.action.value} for {path} ({entry.id})")
        return entry.id

    def pending_mutations(self) -> List[QueueEntry]:
        """Queue entries with status pending, in queue order."""
        return self._entries([MutationStatus.PENDING.value])

    def retryable_mutations(self) -> List[QueueEntry]:
        """Queue entries that still need delivery (pending or error), in queue order."""
        return self._entries([MutationStatus.PENDING.value, MutationStatus.ERROR.value])

    def all_mutations(self) -> List[QueueEntry]:
        """Every queue entry, in queue order."""
        return self._entries(None)

    def get_mutation(self, entry_id: str) -> Optional[QueueEntry]:
        data = self.backend.get_queue_entry(entry_id)
        return self._to_entry(data) if data is not None else None

    def mark_mutation(
        self,
        entry_id: str,
        status: MutationStatus,
        error: Optional[str] = None,
    ) -> bool:
        """
        Set the delivery status of a queue entry.

        The error message is kept only for the error status.

        Returns:
            False if the entry does not exist
        """
        status = MutationStatus(status)
        if status == MutationStatus.ERROR:
            error = error or "Unknown error"
        else:
            error = None
        return self.backend.update_queue_status(entry_id, status.value, error)

    def remove_mutation(self, entry_id: str) -> bool:
        """
        Remove a single queue entry. Only synced entries may be removed.

        Raises:
            ValueError: If the entry is still pending or in error
        """
        entry = self.get_mutation(entry_id)
        if entry is None:
            return False
        if entry.status != MutationStatus.SYNCED:
            raise ValueError(
                f"Queue entry {entry_id} is {entry.status.value}; only synced entries can be removed"
            )
        return self.backend.delete_queue_entry(entry_id)

    def purge_synced_mutations(self) -> int:
        """Delete all synced entries. Pending and error entries are never touched."""
        count = self.backend.delete_queue_entries_with_status(MutationStatus.SYNCED.value)
        if count:
            logger.info(f"Purged {count} synced queue entries")
        return count

    def unsynced_count(self) -> int:
        """Number of entries not yet acknowledged by the remote store."""
        return len(self.retryable_mutations())

    # ========== Sync Metadata ==========

    def save_sync_metadata(self, metadata: SyncMetadata) -> None:
        self.backend.set_meta(SYNC_METADATA_KEY, metadata.to_wire())

    def get_sync_metadata(self) -> Optional[SyncMetadata]:
        data = self.backend.get_meta(SYNC_METADATA_KEY)
        if data is None:
            return None
        return SyncMetadata.model_validate(data)

    # ========== Statistics ==========

    def stats(self) -> Dict[str, Any]:
        """Record counts per collection and queue depth by status."""
        names = {c.value for c in CollectionName} | set(self.backend.list_collections())
        counts = {name: len(self.backend.list_records(name)) for name in sorted(names)}

        queue: Dict[str, int] = {status.value: 0 for status in MutationStatus}
        for entry in self.backend.list_queue_entries():
            queue[entry["status"]] = queue.get(entry["status"], 0) + 1

        return {
            "collections": counts,
            "queue": queue,
            "pending": queue[MutationStatus.PENDING.value],
            "degraded": self.degraded,
        }

    # ========== Backup ==========

    def export_snapshot(self) -> Dict[str, Any]:
        """Export every record collection as a JSON-compatible dict."""
        names = {c.value for c in CollectionName} | set(self.backend.list_collections())
        return {
            "version": SNAPSHOT_FORMAT_VERSION,
            "exportedAt": utc_now().isoformat(),
            "collections": {
                name: self.backend.list_records(name) for name in sorted(names)
            },
        }

    def import_snapshot(self, snapshot: Dict[str, Any]) -> int:
        """
        Import records from an exported snapshot.

        A record is written only if it is new locally or carries a higher
        version than the local copy. Nothing is queued for upload.

        Returns:
            Number of records written

        Raises:
            ValueError: If the snapshot has no collections section
        """
        collections = snapshot.get("collections") if isinstance(snapshot, dict) else None
        if not isinstance(collections, dict):
            raise ValueError("Invalid snapshot: missing 'collections'")

        written = 0
        for name, records in collections.items():
            for data in records:
                incoming = Envelope.model_validate(data)
                existing = self.get(name, incoming.id)
                if existing is None or incoming.version > existing.version:
                    self.put(name, incoming)
                    written += 1
        logger.info(f"Imported {written} record(s) from snapshot")
        return written

    # ========== Helpers ==========

    def _entries(self, statuses: Optional[List[str]]) -> List[QueueEntry]:
        return [self._to_entry(data) for data in self.backend.list_queue_entries(statuses)]

    @staticmethod
    def _check_collection(collection: str) -> str:
        name = collection.value if isinstance(collection, CollectionName) else str(collection)
        if not name:
            raise ValueError("Collection name cannot be empty")
        if name == QUEUE_COLLECTION:
            raise ValueError(f"'{QUEUE_COLLECTION}' is reserved for the mutation queue")
        return name

    @staticmethod
    def _to_envelope(data: dict) -> Envelope:
        try:
            return Envelope.model_validate(data)
        except PydanticValidationError as e:
            raise StorageFault(f"Corrupted record in local store: {e}") from e

    @staticmethod
    def _to_entry(data: dict) -> QueueEntry:
        try:
            return QueueEntry.model_validate(data)
        except PydanticValidationError as e:
            raise StorageFault(f"Corrupted queue entry in local store: {e}") from e
