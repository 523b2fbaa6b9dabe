"""
Tests for the sync manager - push, pull, conflicts and status reporting.
"""

import threading
from unittest.mock import Mock

import pytest

from fieldsync.core.records import RecordRepository
from fieldsync.errors import AuthFault, NotFound, StorageFault, TransportFault
from fieldsync.models import (
    METADATA_PATH,
    Envelope,
    MutationAction,
    MutationStatus,
    RemoteFile,
    RemoteKind,
)
from fieldsync.sync.manager import SyncManager, SyncResult, SyncState, SyncStatus


def remote_file(path: str, kind: RemoteKind = RemoteKind.FILE) -> RemoteFile:
    return RemoteFile(name=path.rsplit("/", 1)[-1], path=path, kind=kind)


@pytest.fixture
def repo(store):
    return RecordRepository(store)


@pytest.fixture
def manager(store, mock_adapter):
    return SyncManager(store, mock_adapter)


def serve_remote(adapter, files):
    """Make the mock adapter list and read the given {path: wire dict} files."""
    def list_files(prefix=""):
        return [remote_file(p) for p in files if p.rsplit("/", 1)[0] == prefix]

    def read_file(path):
        if path not in files:
            raise NotFound(f"missing {path}", path)
        return files[path]

    adapter.list_files.side_effect = list_files
    adapter.read_file.side_effect = read_file


class TestSyncResult:
    """Tests for SyncResult model."""

    def test_success_property(self):
        assert SyncResult(status=SyncStatus.SUCCESS).success is True
        assert SyncResult(status=SyncStatus.ERROR).success is False
        assert SyncResult(status=SyncStatus.LOCAL_ONLY).success is False

    def test_files_synced(self):
        assert SyncResult(uploaded=2, downloaded=3).files_synced == 5


class TestGuard:
    """Tests for the authentication guard and re-entrancy."""

    def test_offline_create_stays_pending(self, repo, store, mock_adapter, manager):
        """Scenario A: unauthenticated pass ends local_only."""
        mock_adapter.is_authenticated.return_value = False
        repo.create("objects", {"name": "A"}, record_id="r1")

        result = manager.sync()

        assert result.status == SyncStatus.LOCAL_ONLY
        assert result.errors == []
        assert store.pending_mutations()[0].status == MutationStatus.PENDING
        mock_adapter.write_file.assert_not_called()
        mock_adapter.ensure_folder.assert_not_called()

    def test_auth_check_raising_is_local_only(self, manager, mock_adapter):
        mock_adapter.is_authenticated.side_effect = AuthFault("revoked")
        assert manager.sync().status == SyncStatus.LOCAL_ONLY

    def test_concurrent_sync_runs_once(self, repo, store, mock_adapter, manager):
        """P4: a second pass during a running one returns already_syncing."""
        repo.create("objects", {"name": "A"}, record_id="r1")
        entered = threading.Event()
        release = threading.Event()

        def slow_ensure_folder(path):
            entered.set()
            release.wait(5)

        mock_adapter.ensure_folder.side_effect = slow_ensure_folder
        results = []
        worker = threading.Thread(target=lambda: results.append(manager.sync()))
        worker.start()
        assert entered.wait(5)

        assert manager.is_syncing is True
        assert manager.state == SyncState.SYNCING
        second = manager.sync()
        assert second.status == SyncStatus.ALREADY_SYNCING
        assert second.uploaded == 0

        release.set()
        worker.join(5)

        assert results[0].status == SyncStatus.SUCCESS
        record_writes = [c for c in mock_adapter.write_file.call_args_list if c[0][0] == "objects/obj-r1.json"]
        assert len(record_writes) == 1
        assert manager.is_syncing is False
        assert manager.state == SyncState.IDLE

    def test_root_folder_failure_skips_push(self, repo, store, mock_adapter, manager):
        repo.create("objects", {"name": "A"}, record_id="r1")
        mock_adapter.ensure_folder.side_effect = TransportFault("offline")

        result = manager.sync()

        assert result.status == SyncStatus.ERROR
        assert result.errors[0].phase == "setup"
        assert store.pending_mutations()[0].status == MutationStatus.PENDING


class TestPush:
    """Tests for draining the mutation queue."""

    def test_successful_write(self, repo, store, mock_adapter, manager):
        """Scenario B: authenticated write marks the entry synced."""
        envelope = repo.create("objects", {"name": "A"}, record_id="r1")

        result = manager.sync()

        assert result.status == SyncStatus.SUCCESS
        assert result.uploaded == 1
        mock_adapter.ensure_folder.assert_any_call("objects")
        mock_adapter.write_file.assert_any_call("objects/obj-r1.json", envelope.to_wire())
        entry = store.all_mutations()[0]
        assert entry.status == MutationStatus.SYNCED
        assert store.pending_mutations() == []

    def test_delete_of_missing_remote_file_succeeds(self, repo, store, mock_adapter, manager):
        """P1: NotFound on delete counts as success."""
        store.enqueue_mutation(MutationAction.DELETE, "objects/obj-gone.json")
        mock_adapter.delete_file.side_effect = NotFound("missing")

        result = manager.sync()

        assert result.status == SyncStatus.SUCCESS
        assert result.uploaded == 1
        assert store.all_mutations()[0].status == MutationStatus.SYNCED

    def test_partial_failure(self, repo, store, mock_adapter, manager):
        """Scenario D: one of three writes fails."""
        for i in range(3):
            repo.create("objects", {"n": i}, record_id=f"r{i}")

        def write_file(path, payload):
            if path == "objects/obj-r1.json":
                raise TransportFault("HTTP 503 for objects/obj-r1.json", path)

        mock_adapter.write_file.side_effect = write_file

        result = manager.sync()

        assert result.status == SyncStatus.ERROR
        assert result.uploaded == 2
        assert len(result.errors) == 1
        assert result.errors[0].path == "objects/obj-r1.json"
        assert result.errors[0].phase == "push"

        statuses = {e.path: e for e in store.all_mutations()}
        failed = statuses["objects/obj-r1.json"]
        assert failed.status == MutationStatus.ERROR
        assert failed.error
        assert statuses["objects/obj-r0.json"].status == MutationStatus.SYNCED
        assert statuses["objects/obj-r2.json"].status == MutationStatus.SYNCED

    def test_every_entry_ends_synced_or_error(self, repo, store, mock_adapter, manager):
        """P3: no entry is left pending after a processing pass."""
        for i in range(4):
            repo.create("equipment", {"n": i}, record_id=f"e{i}")
        mock_adapter.write_file.side_effect = [None, AuthFault("401"), None, TransportFault("timeout"), None]

        manager.sync()

        statuses = {e.status for e in store.all_mutations()}
        assert statuses <= {MutationStatus.SYNCED, MutationStatus.ERROR}
        assert len(store.all_mutations()) == 4

    def test_push_in_queue_order(self, repo, mock_adapter, manager):
        envelope = repo.create("objects", {"v": 1}, record_id="r1")
        repo.update("objects", "r1", {"v": 2})
        repo.delete("objects", "r1")

        manager.sync()

        calls = [
            c for c in mock_adapter.method_calls
            if c[0] in ("write_file", "delete_file") and c[1][0] == "objects/obj-r1.json"
        ]
        assert [c[0] for c in calls] == ["write_file", "write_file", "delete_file"]
        assert calls[0][1][1]["version"] == envelope.version
        assert calls[1][1][1]["version"] == 2

    def test_error_entries_retried_next_pass(self, repo, store, mock_adapter, manager):
        repo.create("objects", {"name": "A"}, record_id="r1")
        mock_adapter.write_file.side_effect = [TransportFault("offline"), None, None, None]

        first = manager.sync()
        assert first.status == SyncStatus.ERROR

        second = manager.sync()
        assert second.uploaded == 1
        assert store.all_mutations()[0].status == MutationStatus.SYNCED
        assert store.all_mutations()[0].error is None

    def test_retry_disabled_leaves_error_entries(self, repo, store, mock_adapter):
        manager = SyncManager(store, mock_adapter, retry_failed=False)
        repo.create("objects", {"name": "A"}, record_id="r1")
        mock_adapter.write_file.side_effect = [TransportFault("offline"), None, None]

        manager.sync()
        second = manager.sync()

        assert second.uploaded == 0
        assert store.all_mutations()[0].status == MutationStatus.ERROR

    def test_failed_entry_superseded_by_synced_entry_not_redelivered(self, store, mock_adapter, manager, make_envelope):
        """An older change must not overwrite a newer one already on the remote."""
        stale = store.enqueue_mutation(MutationAction.UPDATE, "objects/obj-r1.json", make_envelope("r1", 2))
        store.mark_mutation(stale, MutationStatus.ERROR, "HTTP 503")
        newer = store.enqueue_mutation(MutationAction.UPDATE, "objects/obj-r1.json", make_envelope("r1", 3))
        store.mark_mutation(newer, MutationStatus.SYNCED)

        result = manager.sync()

        assert result.status == SyncStatus.SUCCESS
        assert result.uploaded == 0
        assert [c for c in mock_adapter.write_file.call_args_list if c[0][0] == "objects/obj-r1.json"] == []
        assert store.get_mutation(stale).status == MutationStatus.SYNCED

    def test_later_changes_held_back_after_failure(self, repo, store, mock_adapter, manager):
        """A failed update keeps later changes to the same record in order."""
        files = {}
        serve_remote(mock_adapter, files)
        fail_versions = {2}

        def write_file(path, payload):
            if path == "objects/obj-r1.json" and payload["version"] in fail_versions:
                fail_versions.discard(payload["version"])
                raise TransportFault("HTTP 503", path)
            files[path] = payload

        mock_adapter.write_file.side_effect = write_file
        repo.create("objects", {"v": 1}, record_id="r1")
        manager.sync()
        repo.update("objects", "r1", {"v": 2})
        repo.update("objects", "r1", {"v": 3})

        second = manager.sync()

        assert second.status == SyncStatus.ERROR
        assert len(second.errors) == 2
        assert "Held back" in second.errors[1].message
        assert files["objects/obj-r1.json"]["version"] == 1

        third = manager.sync()

        assert third.status == SyncStatus.SUCCESS
        assert third.uploaded == 2
        assert files["objects/obj-r1.json"]["version"] == 3

        manager.sync()
        assert files["objects/obj-r1.json"]["version"] == 3

    def test_failed_update_does_not_resurrect_deleted_record(self, repo, store, mock_adapter, manager):
        files = {}
        serve_remote(mock_adapter, files)
        fail_versions = {2}

        def write_file(path, payload):
            if path == "objects/obj-r1.json" and payload["version"] in fail_versions:
                fail_versions.discard(payload["version"])
                raise TransportFault("HTTP 503", path)
            files[path] = payload

        mock_adapter.write_file.side_effect = write_file
        mock_adapter.delete_file.side_effect = lambda path: files.pop(path, None)
        repo.create("objects", {"v": 1}, record_id="r1")
        manager.sync()
        repo.update("objects", "r1", {"v": 2})
        repo.delete("objects", "r1")

        manager.sync()

        mock_adapter.delete_file.assert_not_called()
        assert store.get("objects", "r1") is None

        manager.sync()
        manager.sync()

        assert "objects/obj-r1.json" not in files
        assert store.get("objects", "r1") is None

    def test_queue_read_failure_recorded(self, store, mock_adapter, manager, monkeypatch):
        monkeypatch.setattr(store, "retryable_mutations", Mock(side_effect=StorageFault("disk gone")))

        result = manager.sync()

        assert result.status == SyncStatus.ERROR
        assert result.errors[0].path == "syncQueue"

    def test_purge_after_sync(self, repo, store, mock_adapter):
        manager = SyncManager(store, mock_adapter, purge_after_sync=True)
        repo.create("objects", {"name": "A"}, record_id="r1")

        manager.sync()

        assert store.all_mutations() == []


class TestPrePushVersionCheck:
    """Tests for the optional remote version check before writes."""

    def test_newer_remote_blocks_write(self, repo, store, mock_adapter):
        manager = SyncManager(store, mock_adapter, check_remote_version=True)
        repo.create("objects", {"name": "local"}, record_id="r1")
        remote = Envelope(id="r1", version=4, payload={"name": "remote"}).to_wire()
        mock_adapter.read_file.side_effect = lambda path: remote if path == "objects/obj-r1.json" else None

        result = manager.sync()

        mock_adapter.write_file.assert_called_once()  # metadata only
        assert mock_adapter.write_file.call_args[0][0] == METADATA_PATH
        assert len(result.conflicts) == 1
        assert "remote version 4" in result.conflicts[0]
        entry = store.all_mutations()[0]
        assert entry.status == MutationStatus.ERROR
        assert "Conflict" in entry.error

    def test_missing_remote_allows_write(self, repo, store, mock_adapter):
        manager = SyncManager(store, mock_adapter, check_remote_version=True)
        repo.create("objects", {"name": "local"}, record_id="r1")

        result = manager.sync()

        assert result.uploaded == 1
        assert result.conflicts == []

    def test_check_disabled_overwrites(self, repo, store, mock_adapter, manager):
        repo.create("objects", {"name": "local"}, record_id="r1")
        mock_adapter.read_file.side_effect = None
        mock_adapter.read_file.return_value = Envelope(id="r1", version=9, payload={}).to_wire()

        result = manager.sync()

        assert result.uploaded == 1
        assert result.conflicts == []


class TestPull:
    """Tests for merging remote records."""

    def test_new_remote_record_downloaded(self, store, mock_adapter, manager):
        """Scenario C: remote r2 v2 with no local copy."""
        serve_remote(mock_adapter, {
            "objects/obj-r2.json": Envelope(id="r2", version=2, payload={"name": "B"}).to_wire(),
        })

        result = manager.sync()

        assert result.downloaded == 1
        local = store.get("objects", "r2")
        assert local.version == 2
        assert local.payload == {"name": "B"}
        assert store.pending_mutations() == []

    def test_higher_remote_version_wins(self, store, mock_adapter, manager):
        """P5: local v3 vs remote v5."""
        store.put("objects", Envelope(id="r1", version=3, payload={"name": "old"}))
        serve_remote(mock_adapter, {
            "objects/obj-r1.json": Envelope(id="r1", version=5, payload={"name": "new"}).to_wire(),
        })

        result = manager.sync()

        assert result.downloaded == 1
        assert store.get("objects", "r1").version == 5
        assert store.get("objects", "r1").payload == {"name": "new"}

    @pytest.mark.parametrize("remote_version", [3, 5])
    def test_local_not_downgraded(self, store, mock_adapter, manager, remote_version):
        """P5/P2: local v5 vs remote v3 (or equal) leaves local unchanged."""
        store.put("objects", Envelope(id="r1", version=5, payload={"name": "local"}))
        serve_remote(mock_adapter, {
            "objects/obj-r1.json": Envelope(id="r1", version=remote_version, payload={"name": "remote"}).to_wire(),
        })

        result = manager.sync()

        assert result.downloaded == 0
        assert store.get("objects", "r1").payload == {"name": "local"}

    def test_all_collections_pulled(self, store, mock_adapter, manager):
        serve_remote(mock_adapter, {
            "objects/obj-1.json": Envelope(id="1", payload={}).to_wire(),
            "equipment/eq-2.json": Envelope(id="2", payload={}).to_wire(),
            "inspections/3.json": Envelope(id="3", payload={}).to_wire(),
            "violations/viol-4.json": Envelope(id="4", payload={}).to_wire(),
        })

        result = manager.sync()

        assert result.downloaded == 4
        assert store.get("inspections", "3") is not None
        assert store.get("violations", "4") is not None

    def test_non_json_and_folders_ignored(self, store, mock_adapter, manager):
        mock_adapter.list_files.side_effect = lambda prefix="": [
            remote_file("objects/readme.txt"),
            remote_file("objects/archive", RemoteKind.DIR),
        ] if prefix == "objects" else []

        result = manager.sync()

        assert result.status == SyncStatus.SUCCESS
        mock_adapter.read_file.assert_not_called()

    def test_unreadable_file_does_not_abort(self, store, mock_adapter, manager):
        files = {
            "objects/obj-bad.json": {"garbage": True},
            "objects/obj-good.json": Envelope(id="good", payload={}).to_wire(),
        }
        serve_remote(mock_adapter, files)

        result = manager.sync()

        assert result.status == SyncStatus.ERROR
        assert result.downloaded == 1
        assert [e.path for e in result.errors] == ["objects/obj-bad.json"]
        assert result.errors[0].phase == "pull"

    def test_list_failure_recorded_per_collection(self, store, mock_adapter, manager):
        def list_files(prefix=""):
            if prefix == "equipment":
                raise TransportFault("timeout", prefix)
            return []

        mock_adapter.list_files.side_effect = list_files

        result = manager.sync()

        assert [e.path for e in result.errors] == ["equipment"]
        assert mock_adapter.list_files.call_count == 4

    def test_id_mismatch_rejected(self, store, mock_adapter, manager):
        serve_remote(mock_adapter, {
            "objects/obj-r1.json": Envelope(id="other", payload={}).to_wire(),
        })

        result = manager.sync()

        assert result.downloaded == 0
        assert store.get("objects", "other") is None
        assert len(result.errors) == 1


class TestMetadata:
    """Tests for sync metadata."""

    def test_metadata_written_locally_and_remotely(self, repo, store, mock_adapter, manager):
        repo.create("objects", {"name": "A"}, record_id="r1")
        serve_remote(mock_adapter, {
            "violations/viol-1.json": Envelope(id="1", payload={}).to_wire(),
        })

        manager.sync()

        metadata = store.get_sync_metadata()
        assert metadata.files_synced == 2
        assert metadata.pending_changes == 0
        mock_adapter.ensure_folder.assert_any_call("metadata")
        mock_adapter.write_file.assert_any_call(METADATA_PATH, metadata.to_wire())
        assert manager.last_sync_time == metadata.last_sync_at

    def test_metadata_counts_failed_entries_as_pending(self, repo, store, mock_adapter, manager):
        repo.create("objects", {"name": "A"}, record_id="r1")

        def write_file(path, payload):
            if path != METADATA_PATH:
                raise TransportFault("down")

        mock_adapter.write_file.side_effect = write_file

        manager.sync()

        assert store.get_sync_metadata().pending_changes == 1

    def test_remote_metadata_failure_keeps_result(self, repo, store, mock_adapter, manager):
        repo.create("objects", {"name": "A"}, record_id="r1")

        def write_file(path, payload):
            if path == METADATA_PATH:
                raise TransportFault("down")

        mock_adapter.write_file.side_effect = write_file

        result = manager.sync()

        assert result.status == SyncStatus.SUCCESS
        assert result.uploaded == 1

    def test_last_sync_time_loaded_from_store(self, store, mock_adapter, manager):
        manager.sync()

        fresh = SyncManager(store, mock_adapter)
        assert fresh.last_sync_time == manager.last_sync_time

    def test_local_only_does_not_touch_metadata(self, store, mock_adapter, manager):
        mock_adapter.is_authenticated.return_value = False

        manager.sync()

        assert store.get_sync_metadata() is None
        assert manager.last_sync_time is None


class TestListeners:
    """Tests for status subscriptions."""

    def test_syncing_then_terminal_status(self, repo, mock_adapter, manager):
        repo.create("objects", {"name": "A"}, record_id="r1")
        events = []
        manager.on_status_change(lambda status, result: events.append((status, result)))

        manager.sync()

        assert [s for s, _ in events] == [SyncStatus.SYNCING, SyncStatus.SUCCESS]
        assert events[0][1].uploaded == 0
        assert events[1][1].uploaded == 1

    def test_local_only_notified(self, mock_adapter, manager):
        mock_adapter.is_authenticated.return_value = False
        events = []
        manager.on_status_change(lambda status, result: events.append(status))

        manager.sync()

        assert events == [SyncStatus.SYNCING, SyncStatus.LOCAL_ONLY]

    def test_unsubscribe(self, manager):
        listener = Mock()
        unsubscribe = manager.on_status_change(listener)
        unsubscribe()

        manager.sync()

        listener.assert_not_called()

    def test_remove_status_listener(self, manager):
        listener = Mock()
        manager.on_status_change(listener)
        manager.remove_status_listener(listener)
        manager.remove_status_listener(listener)  # already gone

        manager.sync()

        listener.assert_not_called()

    def test_failing_listener_does_not_abort_pass(self, repo, manager):
        repo.create("objects", {"name": "A"}, record_id="r1")
        good = Mock()
        manager.on_status_change(Mock(side_effect=RuntimeError("listener bug")))
        manager.on_status_change(good)

        result = manager.sync()

        assert result.status == SyncStatus.SUCCESS
        assert good.call_count == 2
