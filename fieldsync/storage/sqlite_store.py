"""
SQLite storage backend for FieldSync.

This is the durable medium of the local store: every record and every
mutation queue entry is committed before a write call returns.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, List, Optional, Sequence

from fieldsync.errors import StorageFault

# Current schema version
SCHEMA_VERSION = 1


class SQLiteBackend:
    """SQLite storage for records, the mutation queue and sync metadata."""

    def __init__(self, db_path: Path, timeout: float = 5.0):
        """
        Open (and if needed create) the database.

        Raises:
            StorageFault: If the file cannot be created or opened
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageFault(f"Cannot create storage directory {self.db_path.parent}: {e}") from e
        self._init_schema()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with row factory."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        except sqlite3.Error as e:
            raise StorageFault(f"Cannot open database {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageFault(f"Database operation failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            # Records of every collection, keyed by (collection, id)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    collection TEXT NOT NULL,
                    id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (collection, id)
                )
            """)

            # Mutation queue; seq preserves insertion order
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sync_queue (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    action TEXT NOT NULL,
                    path TEXT NOT NULL,
                    payload TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    error TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_sync_queue_status
                ON sync_queue(status)
            """)

            cursor.execute(
                "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                (SCHEMA_VERSION, datetime.now(timezone.utc).isoformat()),
            )

    # ========== Record Operations ==========

    def get_record(self, collection: str, record_id: str) -> Optional[dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT data FROM records WHERE collection = ? AND id = ?",
                (collection, record_id),
            )
            row = cursor.fetchone()

            if row is None:
                return None

            return self._decode(row["data"])

    def put_record(self, collection: str, record_id: str, data: dict) -> None:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT OR REPLACE INTO records (collection, id, data)
                VALUES (?, ?, ?)
                """,
                (collection, record_id, json.dumps(data)),
            )

    def list_records(self, collection: str) -> List[dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT data FROM records WHERE collection = ? ORDER BY id",
                (collection,),
            )
            rows = cursor.fetchall()
            return [self._decode(row["data"]) for row in rows]

    def delete_record(self, collection: str, record_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM records WHERE collection = ? AND id = ?",
                (collection, record_id),
            )
            return cursor.rowcount > 0

    def clear_collection(self, collection: str) -> int:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM records WHERE collection = ?", (collection,))
            return cursor.rowcount

    def list_collections(self) -> List[str]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT DISTINCT collection FROM records ORDER BY collection")
            return [row["collection"] for row in cursor.fetchall()]

    # ========== Queue Operations ==========

    def append_queue_entry(self, entry: dict) -> None:
        payload = entry.get("payload")
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO sync_queue (id, action, path, payload, status, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry["id"],
                    entry["action"],
                    entry["path"],
                    json.dumps(payload) if payload is not None else None,
                    entry.get("status", "pending"),
                    entry.get("error"),
                    entry["createdAt"],
                ),
            )

    def get_queue_entry(self, entry_id: str) -> Optional[dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM sync_queue WHERE id = ?", (entry_id,))
            row = cursor.fetchone()
            return self._row_to_entry(row) if row else None

    def list_queue_entries(self, statuses: Optional[Sequence[str]] = None) -> List[dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()

            query = "SELECT * FROM sync_queue"
            params: list = []

            if statuses is not None:
                if not statuses:
                    return []
                placeholders = ", ".join("?" for _ in statuses)
                query += f" WHERE status IN ({placeholders})"
                params.extend(statuses)

            query += " ORDER BY seq"

            cursor.execute(query, params)
            return [self._row_to_entry(row) for row in cursor.fetchall()]

    def update_queue_status(self, entry_id: str, status: str, error: Optional[str]) -> bool:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE sync_queue SET status = ?, error = ? WHERE id = ?",
                (status, error, entry_id),
            )
            return cursor.rowcount > 0

    def delete_queue_entry(self, entry_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,))
            return cursor.rowcount > 0

    def delete_queue_entries_with_status(self, status: str) -> int:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM sync_queue WHERE status = ?", (status,))
            return cursor.rowcount

    # ========== Metadata Operations ==========

    def get_meta(self, key: str) -> Optional[dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT value FROM meta WHERE key = ?", (key,))
            row = cursor.fetchone()
            return self._decode(row["value"]) if row else None

    def set_meta(self, key: str, value: dict) -> None:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                (key, json.dumps(value)),
            )

    def get_schema_version(self) -> int:
        """Get the current schema version."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT MAX(version) as v FROM schema_version")
            row = cursor.fetchone()
            return row["v"] if row and row["v"] else 0

    # ========== Helpers ==========

    def _row_to_entry(self, row: sqlite3.Row) -> dict:
        """Convert a sync_queue row to the queue entry wire shape."""
        return {
            "id": row["id"],
            "action": row["action"],
            "path": row["path"],
            "payload": self._decode(row["payload"]) if row["payload"] else None,
            "status": row["status"],
            "error": row["error"],
            "createdAt": row["created_at"],
        }

    @staticmethod
    def _decode(raw: str) -> dict:
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageFault(f"Corrupted JSON in local store: {e}") from e
