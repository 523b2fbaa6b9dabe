"""
Validation layer for FieldSync.

Validates record payloads and ids before they reach the local store and
the mutation queue, so nothing unsyncable is ever queued.
"""

import json
import logging
import re
from typing import Any, Optional

from fieldsync.models import CollectionName

logger = logging.getLogger(__name__)

# Validation constraints
MAX_PAYLOAD_BYTES = 1024 * 1024  # 1MB serialized
MAX_ID_LENGTH = 128
ALLOWED_COLLECTIONS = {c.value for c in CollectionName}
# Ids become part of remote file names: objects/obj-<id>.json
SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class ValidationError(Exception):
    """Raised when validation fails."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)


class ValidationLayer:
    """Validates records before storage."""

    @staticmethod
    def validate_collection(collection: str) -> CollectionName:
        """
        Validate a collection name.

        Raises:
            ValidationError: If the collection is not synced by FieldSync
        """
        name = collection.value if isinstance(collection, CollectionName) else str(collection)
        if name not in ALLOWED_COLLECTIONS:
            raise ValidationError(
                f"Unknown collection: {name}. Allowed: {sorted(ALLOWED_COLLECTIONS)}",
                field="collection",
            )
        return CollectionName(name)

    @staticmethod
    def validate_record_id(record_id: str) -> None:
        """
        Validate that an id is usable inside a remote file name.

        Raises:
            ValidationError: If validation fails
        """
        if not record_id:
            raise ValidationError("Record id cannot be empty", field="id")

        if len(record_id) > MAX_ID_LENGTH:
            raise ValidationError(
                f"Record id exceeds maximum length of {MAX_ID_LENGTH} characters",
                field="id",
            )

        if not SAFE_ID_PATTERN.match(record_id) or ".." in record_id:
            raise ValidationError(
                f"Record id contains characters not allowed in a file name: {record_id!r}",
                field="id",
            )

    @staticmethod
    def validate_payload(payload: Any) -> None:
        """
        Validate a record payload.

        Raises:
            ValidationError: If validation fails
        """
        if not isinstance(payload, dict):
            raise ValidationError(
                f"Payload must be a JSON object, got {type(payload).__name__}",
                field="payload",
            )

        try:
            encoded = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Payload is not JSON serializable: {e}", field="payload") from e

        if len(encoded) > MAX_PAYLOAD_BYTES:
            raise ValidationError(
                f"Payload exceeds maximum size of {MAX_PAYLOAD_BYTES} bytes",
                field="payload",
            )

        logger.debug(f"Validation passed for payload with {len(payload)} field(s)")

    @classmethod
    def sanitize_payload(cls, payload: Any) -> Any:
        """
        Sanitize string values of a payload, recursively.

        - Removes null characters
        - Normalizes line endings
        """
        if isinstance(payload, str):
            return payload.replace("\x00", "").replace("\r\n", "\n").replace("\r", "\n")
        if isinstance(payload, dict):
            return {key: cls.sanitize_payload(value) for key, value in payload.items()}
        if isinstance(payload, list):
            return [cls.sanitize_payload(item) for item in payload]
        return payload
