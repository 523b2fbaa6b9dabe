"""
Shared pytest fixtures for FieldSync tests.
"""

from unittest.mock import Mock

import pytest

from fieldsync.errors import NotFound
from fieldsync.models import Envelope
from fieldsync.storage.local_store import LocalStore
from fieldsync.storage.memory_backend import MemoryBackend


@pytest.fixture
def store(tmp_path):
    """LocalStore backed by SQLite at a temp path."""
    return LocalStore(tmp_path / "db" / "fieldsync.db")


@pytest.fixture
def memory_store():
    """LocalStore backed by the in-process backend."""
    return LocalStore(backend=MemoryBackend())


@pytest.fixture
def sync_dir(tmp_path):
    """Directory acting as a shared remote folder."""
    path = tmp_path / "remote" / "FieldSync"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def mock_adapter():
    """Authenticated remote adapter mock with an empty remote store."""
    adapter = Mock()
    adapter.is_authenticated.return_value = True
    adapter.ensure_folder.return_value = None
    adapter.write_file.return_value = None
    adapter.delete_file.return_value = None
    adapter.list_files.return_value = []
    adapter.read_file.side_effect = NotFound("missing")
    adapter.file_exists.return_value = False
    return adapter


@pytest.fixture
def encryption_key():
    """A fresh Fernet key."""
    from fieldsync.sync.encryption import EncryptionLayer
    return EncryptionLayer.generate_key()


@pytest.fixture
def make_envelope():
    """Factory for envelopes with a small payload."""
    def factory(record_id: str = "r1", version: int = 1, **payload) -> Envelope:
        return Envelope(id=record_id, version=version, payload=payload or {"name": "Warehouse 3"})
    return factory
