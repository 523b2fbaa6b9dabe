"""
Remote Adapter Protocol for FieldSync.

Defines the interface for remote file stores (Yandex Disk, local or
shared directory). Paths are relative to the adapter's sync root and use
forward slashes, e.g. ``objects/obj-1234.json``.

Failures are reported with the types in fieldsync.errors: AuthFault,
NotFound, TransportFault or their RemoteFault base.
"""

from typing import Any, List, Protocol

from fieldsync.models import RemoteFile


class RemoteAdapterProtocol(Protocol):
    """Interface for remote file stores."""

    def is_authenticated(self) -> bool:
        """True if the adapter holds a usable credential (may refresh it)."""
        ...

    def ensure_folder(self, path: str) -> None:
        """
        Create a folder if it does not exist yet.

        An empty path designates the sync root itself. Creating a folder
        that already exists is not an error.
        """
        ...

    def read_file(self, path: str) -> Any:
        """
        Read and decode a JSON file.

        Raises:
            NotFound: If the file does not exist
        """
        ...

    def write_file(self, path: str, payload: Any) -> None:
        """Write a JSON-compatible value, replacing any existing file."""
        ...

    def delete_file(self, path: str) -> None:
        """Delete a file. Deleting a missing file is not an error."""
        ...

    def list_files(self, prefix: str = "") -> List[RemoteFile]:
        """
        List the entries directly under a folder.

        A folder that does not exist lists as empty.
        """
        ...

    def file_exists(self, path: str) -> bool:
        ...
