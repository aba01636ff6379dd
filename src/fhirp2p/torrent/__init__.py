"""
Swarm session management.

Components:
- ClientProvider: single-flight construction of the engine client
- SwarmRegistry: in-memory index of active sessions
- StatusSynchronizer: mirrors live session metrics into records
- SwarmManager: session lifecycle (add, create, remove, pause, resume)

The default engine is libtorrent (optional ``engine`` extra).
"""

from .engine import (
    EngineClient,
    EngineFactory,
    EventEmitter,
    FileEntry,
    SessionHandle,
    SessionOptions,
    SessionSnapshot,
)
from .manager import SwarmManager
from .provider import ClientProvider
from .registry import SwarmRegistry
from .sync import StatusSynchronizer, SyncJob, derive_seeds, derive_state

__all__ = [
    # Engine interfaces
    "EngineClient",
    "EngineFactory",
    "EventEmitter",
    "FileEntry",
    "SessionHandle",
    "SessionOptions",
    "SessionSnapshot",
    # Core
    "ClientProvider",
    "StatusSynchronizer",
    "SwarmManager",
    "SwarmRegistry",
    "SyncJob",
    # Utilities
    "derive_seeds",
    "derive_state",
]
