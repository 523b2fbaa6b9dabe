"""
OAuth credential handling for remote adapters.

The access token is persisted through a CredentialStore so it survives
restarts:

    store = FileCredentialStore(Path("~/.fieldsync/credentials/token.json"))
    session = OAuthSession(client_id="...", client_secret="...", store=store)
    print(session.get_authorization_url())       # user opens this URL
    session.consume_callback(redirected_url)      # code or #access_token=...
    session.is_authenticated()                    # refreshes when close to expiry

Only the session reads token internals; everything else asks
is_authenticated() or receives an AuthFault.
"""

import json
import logging
import os
import stat
import threading
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import parse_qs, urlencode

import httpx
from pydantic import ValidationError as PydanticValidationError

from fieldsync.config import AuthFlow
from fieldsync.errors import AuthFault, TransportFault
from fieldsync.models import CredentialToken
from fieldsync.sync.encryption import EncryptionError, EncryptionLayer

logger = logging.getLogger(__name__)

# Lifetime assumed when an implicit-grant callback omits expires_in
DEFAULT_EXPIRES_IN = 3600


# ── Credential stores ─────────────────────────────────────────────────────────

class CredentialStore(Protocol):
    """Persistence medium for the OAuth token."""

    def load(self) -> Optional[CredentialToken]:
        """Return the stored token, or None if there is none."""
        ...

    def save(self, token: CredentialToken) -> None:
        ...

    def clear(self) -> None:
        """Erase the stored token (no error if already absent)."""
        ...


class MemoryCredentialStore:
    """Keeps the token in process memory only."""

    def __init__(self, token: Optional[CredentialToken] = None):
        self._token = token

    def load(self) -> Optional[CredentialToken]:
        return self._token

    def save(self, token: CredentialToken) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


class FileCredentialStore:
    """
    Stores the token as JSON on disk with owner-only permissions.

    Directory: 0700 (rwx------)
    File:      0600 (rw-------)

    With an EncryptionLayer the file content is a Fernet token instead of
    plain JSON.
    """

    def __init__(self, path: Path, encryption: Optional[EncryptionLayer] = None):
        self.path = Path(path)
        self.encryption = encryption

    def load(self) -> Optional[CredentialToken]:
        if not self.path.exists():
            return None

        try:
            raw = self.path.read_text(encoding="utf-8")
            if self.encryption is not None:
                raw = self.encryption.decrypt(raw)
            return CredentialToken.model_validate(json.loads(raw))
        except (OSError, EncryptionError, json.JSONDecodeError, PydanticValidationError) as e:
            logger.warning(f"Ignoring unreadable credential file {self.path}: {e}")
            return None

    def save(self, token: CredentialToken) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        os.chmod(self.path.parent, stat.S_IRWXU)  # 0700

        content = token.model_dump_json(by_alias=True)
        if self.encryption is not None:
            content = self.encryption.encrypt(content)

        self.path.write_text(content, encoding="utf-8")
        os.chmod(self.path, stat.S_IRUSR | stat.S_IWUSR)  # 0600

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


# ── OAuth session ─────────────────────────────────────────────────────────────

class OAuthSession:
    """
    Owns the OAuth token lifecycle: authorization URL, callback handling,
    code exchange, refresh and revocation.
    """

    def __init__(
        self,
        client_id: str,
        store: CredentialStore,
        client_secret: str = "",
        redirect_uri: str = "",
        scope: str = "",
        flow: AuthFlow = AuthFlow.CODE,
        oauth_base_url: str = "https://oauth.yandex.ru",
        refresh_margin: float = 300,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the session and load any persisted token.

        Args:
            client_id: OAuth application id
            store: Where the token is persisted
            client_secret: OAuth application secret (code flow only)
            redirect_uri: Callback URL registered with the provider
            scope: Space separated scopes; empty uses the application default
            flow: Authorization code or implicit grant
            oauth_base_url: Provider base URL (authorize and token endpoints)
            refresh_margin: Refresh when the token expires in less than this many seconds
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scope = scope
        self.flow = AuthFlow(flow)
        self.oauth_base_url = oauth_base_url.rstrip("/")
        self.refresh_margin = refresh_margin
        self.store = store
        self._lock = threading.RLock()
        self._client = httpx.Client(timeout=timeout, transport=transport)
        self._token = store.load()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    # ========== Authorization ==========

    def get_authorization_url(self, state: Optional[str] = None) -> str:
        """URL the user opens to grant access."""
        if not self.client_id:
            raise AuthFault("OAuth client_id is not configured")

        params = {
            "response_type": self.flow.value,
            "client_id": self.client_id,
        }
        if self.redirect_uri:
            params["redirect_uri"] = self.redirect_uri
        if self.scope:
            params["scope"] = self.scope
        if state:
            params["state"] = state
        return f"{self.oauth_base_url}/authorize?{urlencode(params)}"

    def consume_callback(self, raw: str) -> CredentialToken:
        """
        Extract and store the credential from an authorization redirect.

        Accepts a full redirect URL, a ``#access_token=...`` fragment, a
        ``?code=...`` query string, or a bare authorization code.

        Raises:
            AuthFault: If the provider reported an error or nothing usable was found
        """
        raw = raw.strip()
        if not raw:
            raise AuthFault("Empty authorization callback")

        if "#" in raw:
            query = raw.split("#", 1)[1]
        elif "?" in raw:
            query = raw.split("?", 1)[1]
        elif "=" in raw:
            query = raw
        else:
            return self.exchange_code(raw)

        params = {key: values[0] for key, values in parse_qs(query).items()}

        if "error" in params:
            reason = params.get("error_description") or params["error"]
            raise AuthFault(f"Authorization denied: {reason}")

        if "access_token" in params:
            token = CredentialToken.from_expires_in(
                params["access_token"],
                params.get("expires_in", DEFAULT_EXPIRES_IN),
                refresh_token=params.get("refresh_token"),
            )
            self._set_token(token)
            logger.info("Stored access token from implicit grant callback")
            return token

        if "code" in params:
            return self.exchange_code(params["code"])

        raise AuthFault("No access token or authorization code in callback")

    def exchange_code(self, code: str) -> CredentialToken:
        """Exchange an authorization code for a token and store it."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        if self.redirect_uri:
            data["redirect_uri"] = self.redirect_uri

        token = self._request_token(data)
        self._set_token(token)
        logger.info("Stored access token from authorization code")
        return token

    # ========== Token lifecycle ==========

    def refresh(self) -> CredentialToken:
        """
        Obtain a new access token with the refresh token.

        Raises:
            AuthFault: No refresh token, or the provider rejected it
            TransportFault: Network failure or provider outage
        """
        with self._lock:
            if self._token is None or not self._token.refresh_token:
                raise AuthFault("No refresh token available")

            token = self._request_token({
                "grant_type": "refresh_token",
                "refresh_token": self._token.refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            })
            if not token.refresh_token:
                token = token.model_copy(update={"refresh_token": self._token.refresh_token})
            self._set_token(token)
            logger.info("Refreshed access token")
            return token

    def is_authenticated(self) -> bool:
        """
        True if a non-expired token is held.

        A token with a refresh token is refreshed first when it is within
        the refresh margin of its expiry. A token without one (implicit
        grant) is trusted until it expires, without contacting the network.
        """
        with self._lock:
            if self._token is None:
                return False

            if self._token.refresh_token and self._token.expires_within(self.refresh_margin):
                try:
                    self.refresh()
                except (AuthFault, TransportFault) as e:
                    logger.warning(f"Token refresh failed: {e}")

            return not self._token.is_expired()

    def access_token(self) -> str:
        """
        Return a usable access token, refreshing it if needed.

        Raises:
            AuthFault: If there is no valid token
        """
        if not self.is_authenticated():
            raise AuthFault("Not authenticated with the remote store")
        return self._token.access_token

    def disconnect(self) -> None:
        """Forget the token, in memory and in the credential store."""
        with self._lock:
            self._token = None
            self.store.clear()
        logger.info("Disconnected from remote store")

    def token_info(self) -> Optional[CredentialToken]:
        return self._token

    # ========== Internal helpers ==========

    def _set_token(self, token: CredentialToken) -> None:
        with self._lock:
            self._token = token
            self.store.save(token)

    def _request_token(self, data: dict) -> CredentialToken:
        try:
            response = self._client.post(f"{self.oauth_base_url}/token", data=data)
        except httpx.TransportError as e:
            raise TransportFault(f"OAuth token request failed: {e}") from e

        if response.status_code >= 500:
            raise TransportFault(f"OAuth provider error: HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            reason = body.get("error_description") or body.get("error") or response.reason_phrase
            raise AuthFault(f"OAuth error: {reason}")

        if "access_token" not in body:
            raise AuthFault("OAuth error: token response has no access_token")

        return CredentialToken.from_expires_in(
            body["access_token"],
            body.get("expires_in", DEFAULT_EXPIRES_IN),
            refresh_token=body.get("refresh_token"),
        )
