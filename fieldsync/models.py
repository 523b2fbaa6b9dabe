"""
Data models for FieldSync.

These Pydantic models define the records that travel between the local
store and the remote file store. Field names are camelCase on the wire
(remote JSON files, local serialization) and snake_case in Python.
"""

import socket
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Generic, Optional, TypeVar
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CollectionName(str, Enum):
    """Record collections replicated by the sync engine."""

    OBJECTS = "objects"           # Protected sites and buildings
    EQUIPMENT = "equipment"       # Extinguishers, alarms, hydrants
    INSPECTIONS = "inspections"   # Completed inspection checklists
    VIOLATIONS = "violations"     # Violations found during inspections


# File name prefix per collection: objects/obj-<id>.json
COLLECTION_PREFIXES = {
    CollectionName.OBJECTS: "obj",
    CollectionName.EQUIPMENT: "eq",
    CollectionName.INSPECTIONS: "insp",
    CollectionName.VIOLATIONS: "viol",
}

QUEUE_COLLECTION = "syncQueue"
METADATA_FOLDER = "metadata"
METADATA_PATH = f"{METADATA_FOLDER}/sync-status.json"


def record_path(collection: str, record_id: str) -> str:
    """Remote path of a record: ``<collection>/<prefix>-<id>.json``."""
    name = CollectionName(collection)
    return f"{name.value}/{COLLECTION_PREFIXES[name]}-{record_id}.json"


def record_id_from_filename(collection: str, filename: str) -> str:
    """
    Derive the logical record id from a remote file name.

    ``obj-1234.json`` -> ``1234``. Files written without the collection
    prefix keep their stem as the id.
    """
    name = CollectionName(collection)
    stem = filename[:-len(".json")] if filename.endswith(".json") else filename
    prefix = f"{COLLECTION_PREFIXES[name]}-"
    if stem.startswith(prefix):
        return stem[len(prefix):]
    return stem


PayloadT = TypeVar("PayloadT")


class Envelope(BaseModel, Generic[PayloadT]):
    """
    Versioned wrapper around one domain record.

    The sync engine only ever looks at ``id`` and ``version``; the
    payload is opaque domain data.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1)
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
    updated_at: datetime = Field(default_factory=utc_now, alias="updatedAt")
    # Older clients wrote the payload under "data"
    payload: PayloadT = Field(
        validation_alias=AliasChoices("payload", "data"),
        serialization_alias="payload",
    )

    @field_validator("created_at", "updated_at")
    @classmethod
    def _normalize_timezone(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_timestamps(self) -> "Envelope[PayloadT]":
        if self.updated_at < self.created_at:
            raise ValueError("updatedAt must not be earlier than createdAt")
        return self

    def next_version(self, payload: PayloadT) -> "Envelope[PayloadT]":
        """Return a copy carrying new payload, version + 1 and a fresh updatedAt."""
        return self.model_copy(
            update={
                "payload": payload,
                "version": self.version + 1,
                "updated_at": max(utc_now(), self.created_at),
            }
        )

    def to_wire(self) -> dict:
        """Serialize to the JSON shape stored locally and remotely."""
        return self.model_dump(mode="json", by_alias=True)


class MutationAction(str, Enum):
    """Kinds of outbound changes held in the mutation queue."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class MutationStatus(str, Enum):
    """Delivery state of a queue entry."""

    PENDING = "pending"   # Not yet attempted, or interrupted
    SYNCED = "synced"     # Confirmed by the remote store
    ERROR = "error"       # Last attempt failed; retried on the next pass


class QueueEntry(BaseModel):
    """One pending outbound change."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    action: MutationAction
    path: str = Field(..., min_length=1)
    payload: Optional[Envelope] = None
    status: MutationStatus = MutationStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
    error: Optional[str] = None

    @field_validator("created_at")
    @classmethod
    def _normalize_timezone(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_consistency(self) -> "QueueEntry":
        if self.action != MutationAction.DELETE and self.payload is None:
            raise ValueError(f"{self.action.value} entries require a payload")
        if self.error is not None and self.status != MutationStatus.ERROR:
            raise ValueError("error message is only allowed on entries in error status")
        return self

    @property
    def parent_folder(self) -> str:
        """Folder part of the target path ('' for files at the root)."""
        head, _, _ = self.path.rpartition("/")
        return head

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class SyncMetadata(BaseModel):
    """Summary of the last completed sync pass, rewritten wholesale every pass."""

    model_config = ConfigDict(populate_by_name=True)

    last_sync_at: datetime = Field(default_factory=utc_now, alias="lastSyncAt")
    last_sync_by: str = Field(default_factory=socket.gethostname, alias="lastSyncBy")
    files_synced: int = Field(default=0, ge=0, alias="filesSynced")
    pending_changes: int = Field(default=0, ge=0, alias="pendingChanges")
    version: str = "1.0"

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class CredentialToken(BaseModel):
    """OAuth access credential held by a remote adapter."""

    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(..., min_length=1, alias="accessToken")
    expires_at: datetime = Field(..., alias="expiresAt")
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")

    @field_validator("expires_at")
    @classmethod
    def _normalize_timezone(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @classmethod
    def from_expires_in(
        cls,
        access_token: str,
        expires_in: float,
        refresh_token: Optional[str] = None,
    ) -> "CredentialToken":
        """Build a token from an OAuth ``expires_in`` (seconds) response field."""
        return cls(
            access_token=access_token,
            expires_at=utc_now() + timedelta(seconds=float(expires_in)),
            refresh_token=refresh_token,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        """True if the token expires in less than ``seconds``."""
        return (now or utc_now()) + timedelta(seconds=seconds) >= self.expires_at


class RemoteKind(str, Enum):
    """Kinds of remote resources returned by directory listings."""

    FILE = "file"
    DIR = "dir"


class RemoteFile(BaseModel):
    """One entry of a remote directory listing."""

    name: str
    path: str  # relative to the sync root
    kind: RemoteKind
    size: Optional[int] = None
    modified: Optional[datetime] = None
