"""
Transfer engine interfaces.

The swarm core never talks to a peer-to-peer library directly. It consumes:
- EngineClient: one per process, adds and seeds sessions
- SessionHandle: one per swarm, reports a read-only snapshot and emits
  ``close``, ``done``, ``error`` and ``wire`` events
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

from ..config import EngineConfig
from ..records.models import ContentType

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]

SESSION_EVENTS = ("close", "done", "error", "wire")
CLIENT_EVENTS = ("error",)


@dataclass
class FileEntry:
    """A file within a session."""

    name: str
    path: str
    size: int
    type: str = "application/octet-stream"


@dataclass
class SessionSnapshot:
    """Point-in-time metrics reported by a session handle."""

    id: str
    display_name: str
    total_length: int
    files: list[FileEntry]
    bytes_downloaded: int
    bytes_uploaded: int
    download_rate: float
    upload_rate: float
    progress: float  # 0.0 to 1.0
    peer_count: int
    raw_peer_list_length: int | None  # None when the engine does not expose it
    is_complete: bool
    is_paused: bool
    magnet_uri: str = ""


@dataclass
class SessionOptions:
    """Options for adding or seeding a session."""

    name: str | None = None
    save_path: Path | None = None
    trackers: list[str] = field(default_factory=list)
    paused: bool = False
    comment: str = ""

    # Record fields applied after the first synchronization
    description: str | None = None
    content_type: ContentType | None = None
    meta: dict[str, Any] | None = None


class EventEmitter:
    """Minimal synchronous event emitter."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def on(self, event: str, listener: Listener) -> None:
        """Register a listener for an event."""
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Listener) -> None:
        """Remove a previously registered listener."""
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    def emit(self, event: str, *args: Any) -> None:
        """Call every listener for an event; listener errors are logged."""
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(*args)
            except Exception as e:
                logger.warning(f"Listener for {event!r} failed: {e}")


class SessionHandle(EventEmitter, ABC):
    """Live reference to one transfer session owned by the engine."""

    @property
    @abstractmethod
    def id(self) -> str:
        """Info hash identifying the swarm."""
        ...

    @abstractmethod
    def snapshot(self) -> SessionSnapshot:
        """Read current metrics."""
        ...

    @property
    def save_path(self) -> Path | None:
        """Directory that file entry paths are relative to, if the engine has one."""
        return None

    @abstractmethod
    async def destroy(self, purge_data: bool = False) -> None:
        """Terminate the session, optionally deleting stored bytes."""
        ...

    @abstractmethod
    async def pause(self) -> None:
        """Pause transfer."""
        ...

    @abstractmethod
    async def resume(self) -> None:
        """Resume transfer."""
        ...


class EngineClient(EventEmitter, ABC):
    """Client for the transfer engine; emits ``error`` for client-level failures."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the name of this engine."""
        ...

    @abstractmethod
    async def add(self, locator: str, options: SessionOptions) -> SessionHandle:
        """
        Resolve a locator and join its swarm.

        Args:
            locator: Magnet URI, bare info hash, or path to a .torrent file

        Raises:
            AddFailed: If the engine rejects the locator
        """
        ...

    @abstractmethod
    async def seed(self, paths: list[Path], options: SessionOptions) -> SessionHandle:
        """
        Publish local files as a new swarm.

        Raises:
            CreateFailed: If the content cannot be seeded
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Shut down the client and all of its sessions."""
        ...


EngineFactory = Callable[[EngineConfig], Awaitable[EngineClient]]
