"""
Exception hierarchy for FieldSync.

Remote adapters translate transport-specific failures (httpx errors,
HTTP status codes, filesystem errors) into these types so the sync
manager can classify every failure without knowing the backend.
"""

from typing import Optional


class FieldSyncError(Exception):
    """Base exception for all FieldSync errors."""

    pass


class StorageFault(FieldSyncError):
    """
    Raised when the local storage medium fails.

    Reasons may include:
    - Disk full or quota exceeded
    - Corrupted database file
    - Database file unavailable or locked

    A genuine "record not found" is never a StorageFault; reads return
    None in that case.
    """

    pass


class RemoteFault(FieldSyncError):
    """Base exception for remote file store failures."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class AuthFault(RemoteFault):
    """
    Raised when the remote store rejects or lacks a credential.

    Reasons may include:
    - No credential has been obtained yet
    - Access token expired and could not be refreshed
    - Token revoked by the user or the provider
    """

    pass


class NotFound(RemoteFault):
    """
    Raised when a remote file or folder does not exist.

    Callers deleting a file treat this as success.
    """

    pass


class TransportFault(RemoteFault):
    """
    Raised on network failures and remote service errors (5xx).

    This is a transient error; the operation may succeed if retried on a
    later pass.
    """

    pass


class VersionConflict(FieldSyncError):
    """Raised when the remote copy of a record is newer than the one being pushed."""

    def __init__(self, path: str, local_version: int, remote_version: int):
        self.path = path
        self.local_version = local_version
        self.remote_version = remote_version
        super().__init__(
            f"Conflict for {path}: remote version {remote_version} "
            f"is newer than local version {local_version}"
        )


class RecordNotFound(FieldSyncError):
    """Raised when a record layer operation targets an unknown record."""

    def __init__(self, collection: str, record_id: str):
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"Record {record_id} not found in {collection}")
