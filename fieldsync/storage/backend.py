"""
Storage Backend Protocol for FieldSync.

Defines the raw key-value interface the local store runs on (SQLite file,
in-process memory). Backends deal in plain JSON-compatible dicts; model
conversion happens in LocalStore.
"""

from typing import List, Optional, Protocol, Sequence


class StorageBackend(Protocol):
    """Interface for local storage media."""

    # ========== Records ==========

    def get_record(self, collection: str, record_id: str) -> Optional[dict]:
        """Return the stored record, or None if it does not exist."""
        ...

    def put_record(self, collection: str, record_id: str, data: dict) -> None:
        """Insert or replace a record."""
        ...

    def list_records(self, collection: str) -> List[dict]:
        """List all records of a collection."""
        ...

    def delete_record(self, collection: str, record_id: str) -> bool:
        """Delete a record. Returns True if something was deleted."""
        ...

    def clear_collection(self, collection: str) -> int:
        """Delete all records of a collection, returning the count."""
        ...

    def list_collections(self) -> List[str]:
        """Names of collections holding at least one record."""
        ...

    # ========== Mutation queue ==========

    def append_queue_entry(self, entry: dict) -> None:
        """Append an entry at the tail of the queue."""
        ...

    def get_queue_entry(self, entry_id: str) -> Optional[dict]:
        ...

    def list_queue_entries(self, statuses: Optional[Sequence[str]] = None) -> List[dict]:
        """
        List queue entries in insertion order.

        Args:
            statuses: Only return entries whose status is in this sequence
        """
        ...

    def update_queue_status(self, entry_id: str, status: str, error: Optional[str]) -> bool:
        """Set status and error of an entry. Returns False if the entry is unknown."""
        ...

    def delete_queue_entry(self, entry_id: str) -> bool:
        ...

    def delete_queue_entries_with_status(self, status: str) -> int:
        ...

    # ========== Metadata ==========

    def get_meta(self, key: str) -> Optional[dict]:
        ...

    def set_meta(self, key: str, value: dict) -> None:
        ...
