"""
Record Repository for FieldSync.

Application-facing CRUD over the record collections. Every change is
stored in the local store and queued for upload in the same call:
- Create (version 1)
- Update (version + 1)
- Delete
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fieldsync.errors import RecordNotFound
from fieldsync.models import Envelope, MutationAction, record_path, utc_now
from fieldsync.storage.local_store import LocalStore
from fieldsync.core.validation import ValidationLayer

logger = logging.getLogger(__name__)


class RecordRepository:
    """
    Record lifecycle manager.

    The local store is the source of truth for the application; the
    mutation queue carries each change to the remote store later.
    """

    def __init__(self, store: LocalStore):
        """Initialize the repository."""
        self.store = store
        self.validation = ValidationLayer()

    def create(
        self,
        collection: str,
        payload: Dict[str, Any],
        record_id: Optional[str] = None,
    ) -> Envelope:
        """
        Create a new record and queue it for upload.

        Args:
            collection: Target collection
            payload: Domain data (JSON object)
            record_id: Explicit id; a new UUID is generated if omitted

        Returns:
            The stored Envelope (version 1)

        Raises:
            ValidationError: If the collection, id or payload is invalid
        """
        name = self.validation.validate_collection(collection)
        record_id = record_id or str(uuid4())
        self.validation.validate_record_id(record_id)
        payload = self.validation.sanitize_payload(payload)
        self.validation.validate_payload(payload)

        if self.store.get(name, record_id) is not None:
            raise ValueError(f"Record {record_id} already exists in {name.value}")

        now = utc_now()
        envelope = Envelope(id=record_id, version=1, created_at=now, updated_at=now, payload=payload)

        self.store.put(name, envelope)
        self.store.enqueue_mutation(MutationAction.CREATE, record_path(name, record_id), envelope)
        logger.info(f"Created {name.value}/{record_id}")
        return envelope

    def update(self, collection: str, record_id: str, payload: Dict[str, Any]) -> Envelope:
        """
        Replace the payload of a record, bumping its version.

        Raises:
            RecordNotFound: If the record does not exist
            ValidationError: If the payload is invalid
        """
        name = self.validation.validate_collection(collection)
        payload = self.validation.sanitize_payload(payload)
        self.validation.validate_payload(payload)

        existing = self.store.get(name, record_id)
        if existing is None:
            raise RecordNotFound(name.value, record_id)

        envelope = existing.next_version(payload)
        self.store.put(name, envelope)
        self.store.enqueue_mutation(MutationAction.UPDATE, record_path(name, record_id), envelope)
        logger.info(f"Updated {name.value}/{record_id} to v{envelope.version}")
        return envelope

    def delete(self, collection: str, record_id: str) -> None:
        """
        Delete a record locally and queue the remote deletion.

        Raises:
            RecordNotFound: If the record does not exist
        """
        name = self.validation.validate_collection(collection)
        if not self.store.delete(name, record_id):
            raise RecordNotFound(name.value, record_id)

        self.store.enqueue_mutation(MutationAction.DELETE, record_path(name, record_id))
        logger.info(f"Deleted {name.value}/{record_id}")

    def get(self, collection: str, record_id: str) -> Optional[Envelope]:
        name = self.validation.validate_collection(collection)
        return self.store.get(name, record_id)

    def list(self, collection: str) -> List[Envelope]:
        """List records of a collection, most recently updated first."""
        name = self.validation.validate_collection(collection)
        return sorted(self.store.list(name), key=lambda e: e.updated_at, reverse=True)
