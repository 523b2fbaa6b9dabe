"""
Sync Manager for FieldSync.

Orchestrates one synchronization pass:
1. Checks that the remote store is reachable with a valid credential
2. Pushes queued local mutations to the remote store
3. Pulls remote records, keeping the higher version of each
4. Writes sync metadata locally and remotely
5. Reports status transitions to subscribers

Only one pass runs at a time; concurrent requests return
``already_syncing`` immediately.
"""

import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from fieldsync.errors import NotFound, RemoteFault, StorageFault, VersionConflict
from fieldsync.models import (
    METADATA_FOLDER,
    METADATA_PATH,
    QUEUE_COLLECTION,
    CollectionName,
    Envelope,
    MutationAction,
    MutationStatus,
    QueueEntry,
    RemoteFile,
    RemoteKind,
    SyncMetadata,
    record_id_from_filename,
    utc_now,
)
from fieldsync.storage.local_store import LocalStore
from fieldsync.sync.adapter import RemoteAdapterProtocol

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    """Status reported to subscribers and carried by SyncResult."""

    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"
    LOCAL_ONLY = "local_only"            # Not authenticated; changes stay queued
    ALREADY_SYNCING = "already_syncing"  # Another pass is running


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"


class SyncErrorItem(BaseModel):
    """One failure recorded during a pass."""

    path: str
    message: str
    phase: str  # setup, push or pull


class SyncResult(BaseModel):
    """Result of a sync pass."""

    status: SyncStatus = SyncStatus.SYNCING
    uploaded: int = 0
    downloaded: int = 0
    errors: List[SyncErrorItem] = []
    conflicts: List[str] = []
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.status == SyncStatus.SUCCESS

    @property
    def files_synced(self) -> int:
        return self.uploaded + self.downloaded


StatusListener = Callable[[SyncStatus, SyncResult], None]


class SyncManager:
    """
    Drives synchronization between a LocalStore and a remote adapter.

    Features:
    - Queue drained in FIFO order, failures recorded per entry
    - Version-based merge on pull (higher version wins, never downgrades)
    - Optional pre-push check against a newer remote version
    - Observer interface for status transitions
    """

    def __init__(
        self,
        store: LocalStore,
        adapter: RemoteAdapterProtocol,
        check_remote_version: bool = False,
        retry_failed: bool = True,
        purge_after_sync: bool = False,
    ):
        """
        Initialize the sync manager.

        Args:
            store: Local store holding records and the mutation queue
            adapter: Remote file store
            check_remote_version: Skip pushing a record if the remote copy is newer
            retry_failed: Re-push entries left in error by previous passes
            purge_after_sync: Delete synced queue entries at the end of each pass
        """
        self.store = store
        self.adapter = adapter
        self.check_remote_version = check_remote_version
        self.retry_failed = retry_failed
        self.purge_after_sync = purge_after_sync

        self._lock = threading.Lock()
        self._state = SyncState.IDLE
        self._listeners: List[StatusListener] = []
        self._last_sync_time: Optional[datetime] = None

        try:
            metadata = store.get_sync_metadata()
        except (StorageFault, PydanticValidationError) as e:
            logger.warning(f"Could not read local sync metadata: {e}")
            metadata = None
        if metadata is not None:
            self._last_sync_time = metadata.last_sync_at

    # ========== Status ==========

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def last_sync_time(self) -> Optional[datetime]:
        """Completion time of the last pass that reached the remote store."""
        return self._last_sync_time

    def on_status_change(self, listener: StatusListener) -> Callable[[], None]:
        """
        Subscribe to status transitions.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)
        return lambda: self.remove_status_listener(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ========== Sync pass ==========

    def sync(self) -> SyncResult:
        """
        Run one sync pass.

        Returns immediately with status ``already_syncing`` if a pass is
        in progress; nothing is queued and subscribers are not notified.
        """
        if not self._lock.acquire(blocking=False):
            logger.info("Sync already in progress, skipping")
            return SyncResult(status=SyncStatus.ALREADY_SYNCING, finished_at=utc_now())

        try:
            return self._run_pass()
        finally:
            self._lock.release()

    def _run_pass(self) -> SyncResult:
        result = SyncResult()
        self._state = SyncState.SYNCING
        self._notify(SyncStatus.SYNCING, result)

        try:
            if not self._remote_available():
                logger.info("Remote store not authenticated; changes kept locally")
                result.status = SyncStatus.LOCAL_ONLY
            else:
                if self._ensure_root(result):
                    self._push(result)
                    self._pull(result)
                self._write_metadata(result)
                result.status = SyncStatus.ERROR if result.errors else SyncStatus.SUCCESS

                if self.purge_after_sync:
                    self._purge()

                logger.info(
                    f"Sync finished: {result.status.value}, uploaded={result.uploaded}, "
                    f"downloaded={result.downloaded}, errors={len(result.errors)}"
                )
        finally:
            result.finished_at = utc_now()
            self._state = SyncState.IDLE

        self._notify(result.status, result)
        return result

    def _remote_available(self) -> bool:
        try:
            return self.adapter.is_authenticated()
        except RemoteFault as e:
            logger.warning(f"Authentication check failed: {e}")
            return False

    def _ensure_root(self, result: SyncResult) -> bool:
        try:
            self.adapter.ensure_folder("")
        except Exception as e:
            logger.error(f"Failed to prepare remote root folder: {e}")
            result.errors.append(SyncErrorItem(path="/", message=str(e), phase="setup"))
            return False
        return True

    # ========== Push ==========

    def _push(self, result: SyncResult) -> None:
        """Deliver queued mutations in queue order."""
        try:
            if self.retry_failed:
                entries = self.store.retryable_mutations()
            else:
                entries = self.store.pending_mutations()
            if entries:
                entries = self._drop_superseded(entries, self.store.all_mutations())
        except StorageFault as e:
            logger.error(f"Failed to read mutation queue: {e}")
            result.errors.append(SyncErrorItem(path=QUEUE_COLLECTION, message=str(e), phase="push"))
            return

        if entries:
            logger.info(f"Pushing {len(entries)} queued change(s)")

        # Paths with a failed change this pass; later changes to them wait
        failed_paths: Set[str] = set()

        for entry in entries:
            if entry.path in failed_paths:
                message = f"Held back: an earlier change to {entry.path} failed"
                logger.warning(f"{message} ({entry.action.value})")
                self._record_push_failure(entry, message, result)
                continue

            try:
                self._push_entry(entry)
                result.uploaded += 1
            except VersionConflict as e:
                logger.warning(str(e))
                result.conflicts.append(str(e))
                failed_paths.add(entry.path)
                self._record_push_failure(entry, str(e), result)
            except Exception as e:
                logger.error(f"Failed to push {entry.action.value} {entry.path}: {e}")
                failed_paths.add(entry.path)
                self._record_push_failure(entry, str(e) or e.__class__.__name__, result)

    def _drop_superseded(self, entries: List[QueueEntry], queue: List[QueueEntry]) -> List[QueueEntry]:
        """
        Skip entries overtaken by a later change to the same path that already synced.

        Delivering such an entry would put an older copy back on the remote store.
        Skipped entries are marked synced.
        """
        position = {entry.id: i for i, entry in enumerate(queue)}
        last_synced: Dict[str, int] = {}
        for i, entry in enumerate(queue):
            if entry.status == MutationStatus.SYNCED:
                last_synced[entry.path] = i

        remaining = []
        for entry in entries:
            if position.get(entry.id, len(queue)) < last_synced.get(entry.path, -1):
                logger.info(
                    f"Skipping {entry.action.value} {entry.path}: superseded by a later synced change"
                )
                self.store.mark_mutation(entry.id, MutationStatus.SYNCED)
            else:
                remaining.append(entry)
        return remaining

    def _push_entry(self, entry: QueueEntry) -> None:
        self.adapter.ensure_folder(entry.parent_folder)

        if entry.action == MutationAction.DELETE:
            try:
                self.adapter.delete_file(entry.path)
            except NotFound:
                pass
        else:
            if self.check_remote_version:
                self._check_remote_version(entry)
            self.adapter.write_file(entry.path, entry.payload.to_wire())

        self.store.mark_mutation(entry.id, MutationStatus.SYNCED)

    def _check_remote_version(self, entry: QueueEntry) -> None:
        """Raise VersionConflict if the remote copy is newer than the queued one."""
        try:
            data = self.adapter.read_file(entry.path)
        except NotFound:
            return

        try:
            remote = Envelope.model_validate(data)
        except PydanticValidationError as e:
            logger.warning(f"Unreadable remote copy of {entry.path} will be overwritten: {e}")
            return

        if remote.version > entry.payload.version:
            raise VersionConflict(entry.path, entry.payload.version, remote.version)

    def _record_push_failure(self, entry: QueueEntry, message: str, result: SyncResult) -> None:
        result.errors.append(SyncErrorItem(path=entry.path, message=message, phase="push"))
        try:
            self.store.mark_mutation(entry.id, MutationStatus.ERROR, message)
        except StorageFault as e:
            logger.error(f"Could not record failure for queue entry {entry.id}: {e}")

    # ========== Pull ==========

    def _pull(self, result: SyncResult) -> None:
        """Merge remote records into the local store, collection by collection."""
        try:
            # Records deleted locally stay deleted until the delete is pushed
            pending_deletes = {
                entry.path for entry in self.store.retryable_mutations()
                if entry.action == MutationAction.DELETE
            }
        except StorageFault as e:
            logger.error(f"Failed to read mutation queue before pull: {e}")
            result.errors.append(SyncErrorItem(path=QUEUE_COLLECTION, message=str(e), phase="pull"))
            return

        for collection in CollectionName:
            try:
                files = self.adapter.list_files(collection.value)
            except Exception as e:
                logger.error(f"Failed to list remote {collection.value}: {e}")
                result.errors.append(
                    SyncErrorItem(path=collection.value, message=str(e), phase="pull")
                )
                continue

            for remote_file in files:
                if remote_file.kind != RemoteKind.FILE or not remote_file.name.endswith(".json"):
                    continue
                if remote_file.path in pending_deletes:
                    logger.debug(f"Skipping {remote_file.path}: local delete not pushed yet")
                    continue
                try:
                    if self._pull_file(collection, remote_file):
                        result.downloaded += 1
                except Exception as e:
                    logger.error(f"Failed to pull {remote_file.path}: {e}")
                    result.errors.append(
                        SyncErrorItem(path=remote_file.path, message=str(e), phase="pull")
                    )

    def _pull_file(self, collection: CollectionName, remote_file: RemoteFile) -> bool:
        """
        Apply one remote record.

        Returns:
            True if the local copy was replaced
        """
        record_id = record_id_from_filename(collection, remote_file.name)
        incoming = Envelope.model_validate(self.adapter.read_file(remote_file.path))
        if incoming.id != record_id:
            raise RemoteFault(
                f"Record id {incoming.id} does not match file name {remote_file.name}",
                remote_file.path,
            )

        local = self.store.get(collection, record_id)
        if local is not None and incoming.version <= local.version:
            return False

        self.store.put(collection, incoming)
        logger.debug(
            f"Pulled {remote_file.path} v{incoming.version}"
            + (f" (local v{local.version})" if local is not None else "")
        )
        return True

    # ========== Metadata ==========

    def _write_metadata(self, result: SyncResult) -> None:
        """Record the pass summary; failures here never change the result."""
        try:
            metadata = SyncMetadata(
                files_synced=result.files_synced,
                pending_changes=self.store.unsynced_count(),
            )
            self.store.save_sync_metadata(metadata)
        except StorageFault as e:
            logger.warning(f"Failed to save sync metadata locally: {e}")
            metadata = SyncMetadata(files_synced=result.files_synced)

        self._last_sync_time = metadata.last_sync_at

        try:
            self.adapter.ensure_folder(METADATA_FOLDER)
            self.adapter.write_file(METADATA_PATH, metadata.to_wire())
        except Exception as e:
            logger.warning(f"Failed to write remote sync metadata: {e}")

    def _purge(self) -> None:
        try:
            self.store.purge_synced_mutations()
        except StorageFault as e:
            logger.warning(f"Failed to purge synced queue entries: {e}")

    # ========== Listeners ==========

    def _notify(self, status: SyncStatus, result: SyncResult) -> None:
        snapshot = result.model_copy(deep=True)
        for listener in list(self._listeners):
            try:
                listener(status, snapshot)
            except Exception as e:
                logger.error(f"Status listener {listener!r} failed: {e}")
