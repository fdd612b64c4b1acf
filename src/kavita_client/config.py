"""Configuration management for the Kavita client."""

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .remote.credential_store import FileCredentialStore

logger = logging.getLogger(__name__)

HOME_ENV_VAR = "KAVITA_CLIENT_HOME"


def default_data_dir() -> Path:
    """Directory holding config.json and the credential store.

    ``$KAVITA_CLIENT_HOME`` when set, otherwise ``~/.kavita-client``.
    """
    env_home = os.environ.get(HOME_ENV_VAR)
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".kavita-client"


class ClientConfig(BaseModel):
    """Tunables for API clients and the server registry."""

    timeout: float = Field(
        default=10.0, gt=0, description="Wall-clock deadline per request in seconds"
    )
    enrichment_concurrency: int = Field(
        default=8,
        ge=1,
        description="Concurrent volume requests while enriching a series listing",
    )
    page_size: int = Field(default=50, ge=1, description="Series per listing page")
    search_page_size: int = Field(
        default=100, ge=1, description="Series fetched per library when searching"
    )
    store_file: str = Field(
        default="store.json",
        description="Credential store file name, relative to the data directory",
    )


class ConfigManager:
    """Manages configuration loading, saving, and validation."""

    CONFIG_FILE_NAME = "config.json"

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or default_data_dir() / self.CONFIG_FILE_NAME
        self._config: Optional[ClientConfig] = None

    @property
    def data_dir(self) -> Path:
        return self.config_path.parent

    def load(self) -> ClientConfig:
        """Load configuration from file or fall back to defaults."""
        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    data = json.load(f)
                self._config = ClientConfig(**data)
            except Exception as e:
                raise ValueError(f"Failed to load config from {self.config_path}: {e}")
        else:
            logger.debug(f"No config at {self.config_path}, using defaults")
            self._config = ClientConfig()

        return self._config

    def get_config(self) -> ClientConfig:
        if self._config is None:
            return self.load()
        return self._config

    def save(self, config: Optional[ClientConfig] = None) -> None:
        """Save configuration to file."""
        if config is None:
            config = self._config

        if config is None:
            raise ValueError("No configuration to save")

        self.config_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

        with open(self.config_path, "w") as f:
            json.dump(config.model_dump(), f, indent=2)
        self._config = config

    def create_store(self) -> FileCredentialStore:
        """Open the credential store configured for this data directory."""
        config = self.get_config()
        return FileCredentialStore(self.data_dir / config.store_file)
