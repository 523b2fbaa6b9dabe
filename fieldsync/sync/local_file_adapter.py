"""
Local File Remote Adapter.

Uses a local directory (a shared drive, a mounted network folder or a
synced folder) as the remote file store.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List

from fieldsync.errors import NotFound, RemoteFault, TransportFault
from fieldsync.models import RemoteFile, RemoteKind

logger = logging.getLogger(__name__)


class LocalFileAdapter:
    """Implementation of RemoteAdapterProtocol for a local directory."""

    def __init__(self, sync_path: Path):
        """
        Initialize local file adapter.

        Args:
            sync_path: Directory acting as the sync root
        """
        self.sync_path = Path(sync_path).resolve()

    def is_authenticated(self) -> bool:
        """No credential is needed; the store is usable if it can be reached."""
        return self.sync_path.exists() or self.sync_path.parent.exists()

    def ensure_folder(self, path: str) -> None:
        folder = self._resolve(path)
        try:
            folder.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TransportFault(f"Cannot create folder {path or '/'}: {e}", path) from e

    def read_file(self, path: str) -> Any:
        file_path = self._resolve(path)
        if not file_path.is_file():
            raise NotFound(f"File not found: {path}", path)

        try:
            content = file_path.read_text(encoding="utf-8")
        except OSError as e:
            raise TransportFault(f"Cannot read {path}: {e}", path) from e

        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise RemoteFault(f"Invalid JSON in {path}: {e}", path) from e

    def write_file(self, path: str, payload: Any) -> None:
        """Write atomically: a temp file in the same folder, then rename."""
        file_path = self._resolve(path)
        content = json.dumps(payload, indent=2, ensure_ascii=False)

        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=file_path.parent, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content)
                os.replace(tmp_name, file_path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise TransportFault(f"Cannot write {path}: {e}", path) from e

    def delete_file(self, path: str) -> None:
        file_path = self._resolve(path)
        try:
            file_path.unlink()
        except FileNotFoundError:
            logger.debug(f"Delete of missing file {path} ignored")
        except OSError as e:
            raise TransportFault(f"Cannot delete {path}: {e}", path) from e

    def list_files(self, prefix: str = "") -> List[RemoteFile]:
        folder = self._resolve(prefix)
        if not folder.is_dir():
            return []

        entries = []
        for child in sorted(folder.iterdir()):
            if child.name.endswith(".tmp"):
                continue
            stat = child.stat()
            entries.append(RemoteFile(
                name=child.name,
                path=child.relative_to(self.sync_path).as_posix(),
                kind=RemoteKind.DIR if child.is_dir() else RemoteKind.FILE,
                size=None if child.is_dir() else stat.st_size,
                modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            ))
        return entries

    def file_exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def _resolve(self, path: str) -> Path:
        """Map a relative store path to a filesystem path inside the sync root."""
        target = (self.sync_path / path.strip("/")).resolve()
        if target != self.sync_path and self.sync_path not in target.parents:
            raise RemoteFault(f"Path escapes the sync root: {path}", path)
        return target
