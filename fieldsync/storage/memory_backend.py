"""
In-process storage backend.

Used when the SQLite file cannot be opened, so the application keeps
working (without durability across restarts), and in tests.
"""

import copy
import threading
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence


class MemoryBackend:
    """Dict-based implementation of StorageBackend."""

    def __init__(self):
        self._records: Dict[str, Dict[str, dict]] = {}
        self._queue: "OrderedDict[str, dict]" = OrderedDict()
        self._meta: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def get_record(self, collection: str, record_id: str) -> Optional[dict]:
        with self._lock:
            data = self._records.get(collection, {}).get(record_id)
            return copy.deepcopy(data) if data is not None else None

    def put_record(self, collection: str, record_id: str, data: dict) -> None:
        with self._lock:
            self._records.setdefault(collection, {})[record_id] = copy.deepcopy(data)

    def list_records(self, collection: str) -> List[dict]:
        with self._lock:
            records = self._records.get(collection, {})
            return [copy.deepcopy(records[key]) for key in sorted(records)]

    def delete_record(self, collection: str, record_id: str) -> bool:
        with self._lock:
            return self._records.get(collection, {}).pop(record_id, None) is not None

    def clear_collection(self, collection: str) -> int:
        with self._lock:
            removed = self._records.pop(collection, {})
            return len(removed)

    def list_collections(self) -> List[str]:
        with self._lock:
            return sorted(name for name, records in self._records.items() if records)

    def append_queue_entry(self, entry: dict) -> None:
        with self._lock:
            if entry["id"] in self._queue:
                raise ValueError(f"Duplicate queue entry id: {entry['id']}")
            self._queue[entry["id"]] = copy.deepcopy(entry)

    def get_queue_entry(self, entry_id: str) -> Optional[dict]:
        with self._lock:
            entry = self._queue.get(entry_id)
            return copy.deepcopy(entry) if entry is not None else None

    def list_queue_entries(self, statuses: Optional[Sequence[str]] = None) -> List[dict]:
        with self._lock:
            return [
                copy.deepcopy(entry)
                for entry in self._queue.values()
                if statuses is None or entry["status"] in statuses
            ]

    def update_queue_status(self, entry_id: str, status: str, error: Optional[str]) -> bool:
        with self._lock:
            entry = self._queue.get(entry_id)
            if entry is None:
                return False
            entry["status"] = status
            entry["error"] = error
            return True

    def delete_queue_entry(self, entry_id: str) -> bool:
        with self._lock:
            return self._queue.pop(entry_id, None) is not None

    def delete_queue_entries_with_status(self, status: str) -> int:
        with self._lock:
            doomed = [key for key, entry in self._queue.items() if entry["status"] == status]
            for key in doomed:
                del self._queue[key]
            return len(doomed)

    def get_meta(self, key: str) -> Optional[dict]:
        with self._lock:
            value = self._meta.get(key)
            return copy.deepcopy(value) if value is not None else None

    def set_meta(self, key: str, value: dict) -> None:
        with self._lock:
            self._meta[key] = copy.deepcopy(value)
