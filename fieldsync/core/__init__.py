"""Core components for FieldSync."""

from fieldsync.core.records import RecordRepository
from fieldsync.core.validation import ValidationError, ValidationLayer

__all__ = [
    "RecordRepository",
    "ValidationError",
    "ValidationLayer",
]
