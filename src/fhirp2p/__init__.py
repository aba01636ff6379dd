"""fhirp2p - share FHIR datasets over BitTorrent swarms."""

__version__ = "0.1.0"

from .config import Settings, build_settings
from .errors import (
    AddFailed,
    ConfigurationError,
    CreateFailed,
    EngineUnavailable,
    MalformedLocator,
    NotFound,
    RemoveFailed,
    SessionError,
    SwarmError,
)
from .magnet import MagnetLink, create_magnet_uri, parse_magnet_uri
from .records import ContentType, SqliteRecordStore, TorrentRecord
from .torrent import ClientProvider, SessionOptions, SwarmManager

__all__ = [
    "Settings",
    "build_settings",
    "AddFailed",
    "ConfigurationError",
    "CreateFailed",
    "EngineUnavailable",
    "MalformedLocator",
    "NotFound",
    "RemoveFailed",
    "SessionError",
    "SwarmError",
    "MagnetLink",
    "create_magnet_uri",
    "parse_magnet_uri",
    "ContentType",
    "SqliteRecordStore",
    "TorrentRecord",
    "ClientProvider",
    "SessionOptions",
    "SwarmManager",
]
