"""
Configuration management for FieldSync.

Handles loading, validating, and persisting configuration from YAML files.
Default location: ~/.fieldsync/config.yaml
"""

from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_default_storage_path() -> Path:
    """Get the default storage path for FieldSync."""
    return Path.home() / ".fieldsync"


class RemoteBackend(str, Enum):
    """Available remote file stores."""
    YANDEX = "yandex"  # Yandex Disk REST API
    LOCAL = "local"    # Local or shared directory


class AuthFlow(str, Enum):
    """OAuth grant used to obtain the access token."""
    CODE = "code"    # Authorization code, yields a refresh token
    TOKEN = "token"  # Implicit grant, token returned in the URL fragment


class Config(BaseSettings):
    """FieldSync configuration settings."""

    model_config = SettingsConfigDict(env_prefix="FIELDSYNC_", env_file=".env", extra="ignore")

    # Storage settings
    storage_path: Path = Field(default_factory=get_default_storage_path)

    # Remote store
    remote_backend: RemoteBackend = Field(default=RemoteBackend.YANDEX)
    remote_path: Optional[Path] = None  # used when remote_backend = "local"
    root_folder: str = Field(default="FieldSync", min_length=1)

    # OAuth settings (used when remote_backend = "yandex")
    client_id: str = Field(default="")
    client_secret: str = Field(default="")
    redirect_uri: str = Field(default="https://oauth.yandex.ru/verification_code")
    oauth_scope: str = Field(default="")
    auth_flow: AuthFlow = Field(default=AuthFlow.CODE)
    oauth_base_url: str = Field(default="https://oauth.yandex.ru")
    api_base_url: str = Field(default="https://cloud-api.yandex.net/v1/disk")
    request_timeout: float = Field(default=30.0, gt=0)
    token_refresh_margin: int = Field(default=300, ge=0)  # seconds before expiry
    credential_key: Optional[str] = None  # Fernet key for the token file

    # Sync settings
    sync_interval: int = Field(default=30, ge=1)  # seconds between automatic passes
    check_remote_version: bool = False
    retry_failed: bool = True
    purge_after_sync: bool = False

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load configuration from YAML file."""
        if config_path is None:
            config_path = get_default_storage_path() / "config.yaml"

        if config_path.exists():
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
            return cls(**data)

        return cls()

    def save(self, config_path: Optional[Path] = None) -> None:
        """Save configuration to YAML file."""
        if config_path is None:
            config_path = self.storage_path / "config.yaml"

        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "storage_path": str(self.storage_path),
            "remote_backend": self.remote_backend.value,
            "remote_path": str(self.remote_path) if self.remote_path else None,
            "root_folder": self.root_folder,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "oauth_scope": self.oauth_scope,
            "auth_flow": self.auth_flow.value,
            "oauth_base_url": self.oauth_base_url,
            "api_base_url": self.api_base_url,
            "request_timeout": self.request_timeout,
            "token_refresh_margin": self.token_refresh_margin,
            "credential_key": self.credential_key,
            "sync_interval": self.sync_interval,
            "check_remote_version": self.check_remote_version,
            "retry_failed": self.retry_failed,
            "purge_after_sync": self.purge_after_sync,
        }

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False)

    @property
    def sqlite_path(self) -> Path:
        """Get the SQLite database path."""
        return self.storage_path / "sqlite" / "fieldsync.db"

    @property
    def credentials_path(self) -> Path:
        """Get the OAuth token file path."""
        return self.storage_path / "credentials" / "token.json"

    @property
    def logs_path(self) -> Path:
        """Get the logs directory path."""
        return self.storage_path / "logs"

    def ensure_directories(self) -> None:
        """Create all necessary directories."""
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        self.credentials_path.parent.mkdir(parents=True, exist_ok=True)
        self.logs_path.mkdir(parents=True, exist_ok=True)
