"""
Yandex Disk Remote Adapter.

Talks to the Yandex Disk REST API (https://cloud-api.yandex.net/v1/disk)
with an OAuth token supplied by an OAuthSession. All records live under a
single root folder on the disk, e.g. ``disk:/FieldSync/objects/obj-1.json``.

HTTP failures are mapped onto the FieldSync error types:

    401, 403          -> AuthFault
    404               -> NotFound (also 409 for a missing parent folder)
    429, 5xx, network -> TransportFault
    anything else     -> RemoteFault
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

import httpx

from fieldsync.errors import AuthFault, NotFound, RemoteFault, TransportFault
from fieldsync.models import CredentialToken, RemoteFile, RemoteKind
from fieldsync.sync.credentials import OAuthSession

logger = logging.getLogger(__name__)

# Returned with 409 when the parent of a new folder is missing
PARENT_MISSING_ERROR = "DiskPathDoesntExistsError"


class YandexDiskAdapter:
    """Implementation of RemoteAdapterProtocol for Yandex Disk."""

    def __init__(
        self,
        session: OAuthSession,
        root_folder: str = "FieldSync",
        api_base_url: str = "https://cloud-api.yandex.net/v1/disk",
        timeout: float = 30.0,
        page_size: int = 100,
        path_scheme: str = "disk:",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the adapter.

        Args:
            session: OAuth session providing the access token
            root_folder: Folder on the disk that holds all synced files
            api_base_url: REST API base URL
            timeout: HTTP timeout in seconds
            page_size: Entries requested per listing page
            path_scheme: "disk:" for full disk access, "app:" for app folder scope
            transport: Optional httpx transport (tests)
        """
        self.session = session
        self.root_folder = root_folder.strip("/")
        self.page_size = page_size
        self.path_scheme = path_scheme
        self.client = httpx.Client(
            base_url=api_base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )
        self._known_folders: Set[str] = set()

    def close(self) -> None:
        """Close the HTTP clients."""
        self.client.close()
        self.session.close()

    def __enter__(self) -> "YandexDiskAdapter":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ========== Credential boundary ==========

    def is_authenticated(self) -> bool:
        return self.session.is_authenticated()

    def get_authorization_url(self, state: Optional[str] = None) -> str:
        return self.session.get_authorization_url(state)

    def consume_callback(self, raw: str) -> CredentialToken:
        return self.session.consume_callback(raw)

    def disconnect(self) -> None:
        self._known_folders.clear()
        self.session.disconnect()

    # ========== File operations ==========

    def ensure_folder(self, path: str) -> None:
        """Create the folder and any missing parents below the root."""
        parts = [p for p in path.strip("/").split("/") if p]
        levels = [""] + ["/".join(parts[:i + 1]) for i in range(len(parts))]

        for level in levels:
            if level in self._known_folders:
                continue
            response = self._request("PUT", "/resources", params={"path": self._disk_path(level)},
                                     path=level, allow={409})
            if response.status_code == 409 and self._error_code(response) == PARENT_MISSING_ERROR:
                raise NotFound(f"Parent folder missing for {level or '/'}", level)
            if response.status_code == 201:
                logger.info(f"Created remote folder {self._disk_path(level)}")
            self._known_folders.add(level)

    def read_file(self, path: str) -> Any:
        link = self._request("GET", "/resources/download", params={"path": self._disk_path(path)},
                             path=path)
        href = self._href(link, path)

        response = self._send(lambda: self.client.get(href), path)
        self._raise_for_status(response, path)
        try:
            return response.json()
        except ValueError as e:
            raise RemoteFault(f"Invalid JSON in {path}: {e}", path) from e

    def write_file(self, path: str, payload: Any) -> None:
        try:
            link = self._request(
                "GET",
                "/resources/upload",
                params={"path": self._disk_path(path), "overwrite": "true"},
                path=path,
            )
        except NotFound:
            # Folder removed on the server since it was cached
            self._forget_folders(path)
            raise
        href = self._href(link, path)

        body = json.dumps(payload, indent=2, ensure_ascii=False).encode("utf-8")
        response = self._send(
            lambda: self.client.put(href, content=body,
                                    headers={"Content-Type": "application/json"}),
            path,
        )
        self._raise_for_status(response, path)
        logger.debug(f"Uploaded {path} ({len(body)} bytes)")

    def delete_file(self, path: str) -> None:
        try:
            self._request("DELETE", "/resources",
                          params={"path": self._disk_path(path), "permanently": "true"}, path=path)
        except NotFound:
            logger.debug(f"Delete of missing remote file {path} ignored")

    def list_files(self, prefix: str = "") -> List[RemoteFile]:
        """List a folder, following pagination until every entry is read."""
        folder = prefix.strip("/")
        entries: List[RemoteFile] = []
        offset = 0

        while True:
            try:
                response = self._request(
                    "GET",
                    "/resources",
                    params={
                        "path": self._disk_path(folder),
                        "limit": self.page_size,
                        "offset": offset,
                    },
                    path=folder,
                )
            except NotFound:
                return []

            embedded = response.json().get("_embedded") or {}
            items = embedded.get("items") or []
            entries.extend(self._to_remote_file(item, folder) for item in items)

            offset += len(items)
            total = embedded.get("total")
            if not items or len(items) < self.page_size or (total is not None and offset >= total):
                break

        return entries

    def file_exists(self, path: str) -> bool:
        try:
            self._request("GET", "/resources",
                          params={"path": self._disk_path(path), "fields": "path,type"}, path=path)
        except NotFound:
            return False
        return True

    # ========== Internal helpers ==========

    def _forget_folders(self, path: str) -> None:
        """Drop the folders above path from the cache so ensure_folder checks them again."""
        parts = path.strip("/").split("/")[:-1]
        for i in range(len(parts) + 1):
            self._known_folders.discard("/".join(parts[:i]))

    def _disk_path(self, path: str) -> str:
        relative = path.strip("/")
        base = f"{self.path_scheme}/{self.root_folder}"
        return f"{base}/{relative}" if relative else base

    def _relative_path(self, disk_path: str) -> Optional[str]:
        base = f"{self.path_scheme}/{self.root_folder}/"
        if disk_path.startswith(base):
            return disk_path[len(base):]
        return None

    def _to_remote_file(self, item: Dict[str, Any], folder: str) -> RemoteFile:
        name = item["name"]
        path = self._relative_path(item.get("path", "")) or (f"{folder}/{name}" if folder else name)
        modified = item.get("modified")
        return RemoteFile(
            name=name,
            path=path,
            kind=RemoteKind.DIR if item.get("type") == "dir" else RemoteKind.FILE,
            size=item.get("size"),
            modified=datetime.fromisoformat(modified) if modified else None,
        )

    def _request(
        self,
        method: str,
        url: str,
        params: Dict[str, Any],
        path: str,
        allow: Optional[Set[int]] = None,
    ) -> httpx.Response:
        """Send an authenticated API request and map error statuses."""
        headers = {"Authorization": f"OAuth {self.session.access_token()}"}
        response = self._send(
            lambda: self.client.request(method, url, params=params, headers=headers),
            path,
        )
        if allow and response.status_code in allow:
            return response
        self._raise_for_status(response, path)
        return response

    @staticmethod
    def _send(call, path: str) -> httpx.Response:
        try:
            return call()
        except httpx.TransportError as e:
            raise TransportFault(f"Network error for {path or '/'}: {e}", path) from e

    @classmethod
    def _raise_for_status(cls, response: httpx.Response, path: str) -> None:
        status = response.status_code
        if status < 400:
            return

        message = f"HTTP {status} for {path or '/'}: {cls._error_message(response)}"
        if status in (401, 403):
            raise AuthFault(message, path)
        if status == 404 or (status == 409 and cls._error_code(response) == PARENT_MISSING_ERROR):
            raise NotFound(message, path)
        if status == 429 or status >= 500:
            raise TransportFault(message, path)
        raise RemoteFault(message, path)

    @staticmethod
    def _href(response: httpx.Response, path: str) -> str:
        href = response.json().get("href")
        if not href:
            raise RemoteFault(f"No transfer link returned for {path}", path)
        return href

    @staticmethod
    def _error_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    @classmethod
    def _error_code(cls, response: httpx.Response) -> Optional[str]:
        return cls._error_body(response).get("error")

    @classmethod
    def _error_message(cls, response: httpx.Response) -> str:
        body = cls._error_body(response)
        return body.get("description") or body.get("message") or body.get("error") or response.reason_phrase
