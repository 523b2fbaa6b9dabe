"""
Tests for the storage layer: backends and the LocalStore.
"""

import sqlite3

import pytest

from fieldsync.errors import StorageFault
from fieldsync.models import MutationAction, MutationStatus, SyncMetadata
from fieldsync.storage.local_store import LocalStore
from fieldsync.storage.memory_backend import MemoryBackend
from fieldsync.storage.sqlite_store import SQLiteBackend


@pytest.fixture(params=["sqlite", "memory"])
def any_store(request, tmp_path):
    """LocalStore on each backend."""
    if request.param == "sqlite":
        return LocalStore(tmp_path / "fieldsync.db")
    return LocalStore(backend=MemoryBackend())


class TestRecords:
    """Tests for record CRUD on both backends."""

    def test_get_missing_returns_none(self, any_store):
        assert any_store.get("objects", "nope") is None

    def test_put_and_get(self, any_store, make_envelope):
        envelope = make_envelope("r1", 2)
        any_store.put("objects", envelope)

        stored = any_store.get("objects", "r1")
        assert stored == envelope

    def test_put_is_upsert(self, any_store, make_envelope):
        any_store.put("objects", make_envelope("r1", 1))
        any_store.put("objects", make_envelope("r1", 2, name="Renamed"))

        records = any_store.list("objects")
        assert len(records) == 1
        assert records[0].version == 2
        assert records[0].payload == {"name": "Renamed"}

    def test_collections_are_separate(self, any_store, make_envelope):
        any_store.put("objects", make_envelope("r1"))
        any_store.put("equipment", make_envelope("r1"))

        assert len(any_store.list("objects")) == 1
        any_store.delete("objects", "r1")
        assert any_store.get("equipment", "r1") is not None

    def test_delete_reports_existence(self, any_store, make_envelope):
        any_store.put("objects", make_envelope("r1"))

        assert any_store.delete("objects", "r1") is True
        assert any_store.delete("objects", "r1") is False

    def test_clear_collection(self, any_store, make_envelope):
        for i in range(3):
            any_store.put("violations", make_envelope(f"v{i}"))

        assert any_store.clear_collection("violations") == 3
        assert any_store.list("violations") == []

    def test_queue_collection_name_reserved(self, any_store, make_envelope):
        with pytest.raises(ValueError):
            any_store.put("syncQueue", make_envelope())


class TestMutationQueue:
    """Tests for the mutation queue."""

    def test_enqueue_creates_pending_entry(self, any_store, make_envelope):
        entry_id = any_store.enqueue_mutation(
            MutationAction.CREATE, "objects/obj-r1.json", make_envelope()
        )

        entry = any_store.get_mutation(entry_id)
        assert entry.status == MutationStatus.PENDING
        assert entry.payload.id == "r1"

    def test_delete_entry_has_no_payload(self, any_store, make_envelope):
        entry_id = any_store.enqueue_mutation(
            MutationAction.DELETE, "objects/obj-r1.json", make_envelope()
        )
        assert any_store.get_mutation(entry_id).payload is None

    def test_pending_preserves_insertion_order(self, any_store, make_envelope):
        paths = [f"objects/obj-{i}.json" for i in range(5)]
        for i, path in enumerate(paths):
            any_store.enqueue_mutation(MutationAction.CREATE, path, make_envelope(str(i)))

        assert [e.path for e in any_store.pending_mutations()] == paths

    def test_pending_excludes_synced_and_error(self, any_store, make_envelope):
        ids = [
            any_store.enqueue_mutation(MutationAction.CREATE, f"objects/obj-{i}.json", make_envelope(str(i)))
            for i in range(3)
        ]
        any_store.mark_mutation(ids[0], MutationStatus.SYNCED)
        any_store.mark_mutation(ids[1], MutationStatus.ERROR, "timeout")

        assert [e.id for e in any_store.pending_mutations()] == [ids[2]]
        assert [e.id for e in any_store.retryable_mutations()] == [ids[1], ids[2]]
        assert any_store.unsynced_count() == 2

    def test_mark_error_keeps_message(self, any_store):
        entry_id = any_store.enqueue_mutation(MutationAction.DELETE, "objects/obj-1.json")
        any_store.mark_mutation(entry_id, MutationStatus.ERROR, "HTTP 503")

        entry = any_store.get_mutation(entry_id)
        assert entry.status == MutationStatus.ERROR
        assert entry.error == "HTTP 503"

    def test_mark_error_without_message(self, any_store):
        entry_id = any_store.enqueue_mutation(MutationAction.DELETE, "objects/obj-1.json")
        any_store.mark_mutation(entry_id, MutationStatus.ERROR)

        assert any_store.get_mutation(entry_id).error

    def test_mark_synced_clears_error(self, any_store):
        entry_id = any_store.enqueue_mutation(MutationAction.DELETE, "objects/obj-1.json")
        any_store.mark_mutation(entry_id, MutationStatus.ERROR, "HTTP 503")
        any_store.mark_mutation(entry_id, MutationStatus.SYNCED)

        entry = any_store.get_mutation(entry_id)
        assert entry.status == MutationStatus.SYNCED
        assert entry.error is None

    def test_mark_unknown_entry(self, any_store):
        assert any_store.mark_mutation("missing", MutationStatus.SYNCED) is False

    def test_purge_only_removes_synced(self, any_store):
        ids = [
            any_store.enqueue_mutation(MutationAction.DELETE, f"objects/obj-{i}.json")
            for i in range(3)
        ]
        any_store.mark_mutation(ids[0], MutationStatus.SYNCED)
        any_store.mark_mutation(ids[1], MutationStatus.ERROR, "x")

        assert any_store.purge_synced_mutations() == 1
        remaining = {e.id for e in any_store.all_mutations()}
        assert remaining == {ids[1], ids[2]}

    def test_remove_pending_entry_refused(self, any_store):
        entry_id = any_store.enqueue_mutation(MutationAction.DELETE, "objects/obj-1.json")

        with pytest.raises(ValueError):
            any_store.remove_mutation(entry_id)
        assert any_store.get_mutation(entry_id) is not None

    def test_remove_synced_entry(self, any_store):
        entry_id = any_store.enqueue_mutation(MutationAction.DELETE, "objects/obj-1.json")
        any_store.mark_mutation(entry_id, MutationStatus.SYNCED)

        assert any_store.remove_mutation(entry_id) is True
        assert any_store.get_mutation(entry_id) is None
        assert any_store.remove_mutation(entry_id) is False


class TestSyncMetadataStorage:
    """Tests for the local copy of sync metadata."""

    def test_missing_metadata(self, any_store):
        assert any_store.get_sync_metadata() is None

    def test_save_and_get(self, any_store):
        metadata = SyncMetadata(files_synced=4, pending_changes=2)
        any_store.save_sync_metadata(metadata)

        assert any_store.get_sync_metadata() == metadata


class TestStatsAndSnapshot:
    """Tests for statistics and JSON backup."""

    def test_stats(self, any_store, make_envelope):
        any_store.put("objects", make_envelope("r1"))
        any_store.put("objects", make_envelope("r2"))
        any_store.enqueue_mutation(MutationAction.DELETE, "objects/obj-r3.json")

        stats = any_store.stats()
        assert stats["collections"]["objects"] == 2
        assert stats["collections"]["violations"] == 0
        assert stats["queue"] == {"pending": 1, "synced": 0, "error": 0}
        assert stats["pending"] == 1

    def test_snapshot_round_trip(self, any_store, make_envelope):
        any_store.put("objects", make_envelope("r1", 2))
        any_store.put("inspections", make_envelope("i1"))
        snapshot = any_store.export_snapshot()

        target = LocalStore(backend=MemoryBackend())
        assert target.import_snapshot(snapshot) == 2
        assert target.get("objects", "r1").version == 2
        assert target.pending_mutations() == []

    def test_import_keeps_higher_local_version(self, any_store, make_envelope):
        any_store.put("objects", make_envelope("r1", 5, name="local"))
        snapshot = {"collections": {"objects": [make_envelope("r1", 3, name="old").to_wire()]}}

        assert any_store.import_snapshot(snapshot) == 0
        assert any_store.get("objects", "r1").payload == {"name": "local"}

    def test_import_rejects_invalid_snapshot(self, any_store):
        with pytest.raises(ValueError):
            any_store.import_snapshot({"version": "1.0"})


class TestSQLiteBackend:
    """SQLite-specific behaviour."""

    def test_data_survives_reopen(self, tmp_path, make_envelope):
        db_path = tmp_path / "fieldsync.db"
        first = LocalStore(db_path)
        first.put("objects", make_envelope("r1"))
        entry_id = first.enqueue_mutation(MutationAction.CREATE, "objects/obj-r1.json", make_envelope("r1"))

        second = LocalStore(db_path)
        assert second.get("objects", "r1") is not None
        assert second.get_mutation(entry_id).status == MutationStatus.PENDING

    def test_schema_version(self, tmp_path):
        backend = SQLiteBackend(tmp_path / "fieldsync.db")
        assert backend.get_schema_version() == 1

    def test_corrupted_record_raises_storage_fault(self, tmp_path):
        db_path = tmp_path / "fieldsync.db"
        store = LocalStore(db_path)

        conn = sqlite3.connect(db_path)
        conn.execute(
            "INSERT INTO records (collection, id, data) VALUES (?, ?, ?)",
            ("objects", "bad", "{not json"),
        )
        conn.commit()
        conn.close()

        with pytest.raises(StorageFault):
            store.get("objects", "bad")


class TestFallback:
    """Tests for degrading to the in-memory backend."""

    def test_unopenable_database_falls_back(self, tmp_path, make_envelope):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        store = LocalStore(blocker / "sub" / "fieldsync.db")

        assert store.degraded is True
        assert isinstance(store.backend, MemoryBackend)
        store.put("objects", make_envelope("r1"))
        assert store.get("objects", "r1") is not None
        assert store.stats()["degraded"] is True

    def test_fallback_disabled_raises(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        with pytest.raises(StorageFault):
            LocalStore(blocker / "sub" / "fieldsync.db", fallback=False)

    def test_healthy_database_not_degraded(self, store):
        assert store.degraded is False
