"""Application configuration."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomllib
from platformdirs import user_data_dir
from pydantic_settings import BaseSettings

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

APP_NAME = "fhirp2p"

CONFIG_SEARCH_PATHS = [
    Path.cwd() / "config.toml",
    Path.cwd() / "fhirp2p.toml",
    Path.home() / ".config" / "fhirp2p" / "config.toml",
]


def load_config_file(path: Path | None = None) -> dict[str, Any]:
    """Load configuration from a TOML file."""
    if path:
        paths_to_try = [path]
    else:
        paths_to_try = CONFIG_SEARCH_PATHS

    for config_path in paths_to_try:
        if config_path.exists():
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
            logger.info(f"Loaded config from {config_path}")
            return data

    return {}


@dataclass
class EngineConfig:
    """Resolved configuration handed to the transfer engine."""

    trackers: list[str]
    storage_path: Path
    announce_list: list[list[str]] = field(default_factory=list)
    web_seeds: bool = True
    listen_interfaces: str = ""
    # Browser-style feature flags
    dht: bool = False
    lsd: bool = False
    tcp_pool: bool = False


class Settings(BaseSettings):
    """Application configuration.

    Configuration is loaded from (in order of priority, highest first):
    1. CLI arguments
    2. Environment variables (prefixed with FHIRP2P_; lists as JSON)
    3. TOML config file (config.toml, fhirp2p.toml, or ~/.config/fhirp2p/config.toml)
    4. Default values
    """

    model_config = {"env_prefix": "FHIRP2P_"}

    # Swarm settings
    trackers: list[str] = [
        "wss://tracker.openwebtorrent.com",
        "udp://tracker.opentrackr.org:1337/announce",
    ]
    announce_list: list[list[str]] = []
    web_seeds: bool = True
    listen_interfaces: str = "0.0.0.0:6881"

    # Storage; ${PORT} is replaced with the configured port
    storage_path: str = "/tmp/fhir-torrents"
    database_path: Path | None = None

    # Synchronization
    sync_interval: float = 1.0
    restore_on_startup: bool = True

    # Web server
    host: str = "127.0.0.1"
    port: int = 3000
    api_key: str = ""

    # General
    log_level: str = "INFO"

    def resolved_storage_path(self) -> Path:
        """Storage path with ${PORT} substituted."""
        port = os.environ.get("PORT") or str(self.port)
        return Path(self.storage_path.replace("${PORT}", port))

    def resolved_database_path(self) -> Path:
        """Database path, defaulting to the user data directory."""
        if self.database_path:
            return self.database_path
        return Path(user_data_dir(APP_NAME, APP_NAME)) / "torrents.db"

    def engine_config(self) -> EngineConfig:
        """
        Build engine configuration with browser feature flags applied.

        DHT, local service discovery and the TCP socket pool are always
        disabled regardless of other settings.

        Raises:
            ConfigurationError: If trackers or storage path are missing
        """
        if not self.trackers:
            raise ConfigurationError("At least one tracker must be configured")
        if not self.storage_path.strip():
            raise ConfigurationError("storage_path must be set")

        return EngineConfig(
            trackers=list(self.trackers),
            announce_list=self.announce_list or [list(self.trackers)],
            storage_path=self.resolved_storage_path(),
            web_seeds=self.web_seeds,
            listen_interfaces=self.listen_interfaces,
            dht=False,
            lsd=False,
            tcp_pool=False,
        )


def build_settings(config_path: Path | None = None, **overrides: Any) -> Settings:
    """Build settings from TOML file, env vars, and explicit overrides."""
    file_config = load_config_file(config_path)
    cli_overrides = {k: v for k, v in overrides.items() if v is not None}
    merged = {**file_config, **cli_overrides}
    return Settings(**merged)


EXAMPLE_CONFIG = '''\
# fhirp2p Configuration
# Save as: config.toml, fhirp2p.toml, or ~/.config/fhirp2p/config.toml

# Trackers announced for every swarm
trackers = [
    "wss://tracker.openwebtorrent.com",
    "udp://tracker.opentrackr.org:1337/announce",
]
web_seeds = true
listen_interfaces = "0.0.0.0:6881"

# Where swarm content is stored; ${PORT} expands to the web port
storage_path = "/tmp/fhir-torrents"

# SQLite database for torrent records (defaults to the user data dir)
# database_path = "./torrents.db"

# Seconds between status synchronizations
sync_interval = 1.0

# Re-add persisted torrents when the service starts
restore_on_startup = true

# Web server
host = "127.0.0.1"
port = 3000
api_key = ""

# General
log_level = "INFO"
'''
