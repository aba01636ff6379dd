"""Registry of the swarm sessions active in this process."""

import logging

from ..errors import NotFound
from .engine import SessionHandle

logger = logging.getLogger(__name__)


class SwarmRegistry:
    """In-memory index of active sessions, keyed by info hash.

    Lives for the process only; SwarmManager.restore() rebuilds it from
    persisted records after a restart.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, SessionHandle] = {}

    def register(self, session_id: str, handle: SessionHandle) -> None:
        """Insert or replace the handle for a session"""
        replaced = session_id in self._sessions
        self._sessions[session_id] = handle
        if not replaced:
            logger.debug(f"Registered session: {session_id}")

    def lookup(self, session_id: str) -> SessionHandle:
        """Get the handle for a session, raising NotFound if absent"""
        handle = self._sessions.get(session_id)
        if handle is None:
            raise NotFound(session_id)
        return handle

    def get(self, session_id: str) -> SessionHandle | None:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> None:
        """Remove a session entry; no-op if absent"""
        if self._sessions.pop(session_id, None) is not None:
            logger.debug(f"Unregistered session: {session_id}")

    def list_all(self) -> list[SessionHandle]:
        """Snapshot of all registered handles"""
        return list(self._sessions.values())

    def ids(self) -> list[str]:
        return list(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
