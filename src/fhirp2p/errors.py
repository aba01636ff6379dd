"""Exception hierarchy for swarm management."""


class SwarmError(Exception):
    """Base exception for swarm-related errors."""

    pass


class EngineUnavailable(SwarmError):
    """Raised when the transfer engine cannot be loaded or constructed."""

    pass


class ConfigurationError(SwarmError):
    """Raised when required settings are missing or invalid."""

    pass


class SessionError(SwarmError):
    """Base exception for session lifecycle failures."""

    def __init__(self, message: str, locator: str | None = None):
        super().__init__(message)
        self.locator = locator


class AddFailed(SessionError):
    """Raised when the engine rejects a locator."""

    pass


class CreateFailed(SessionError):
    """Raised when the engine cannot seed the given content."""

    pass


class RemoveFailed(SessionError):
    """Raised when a session cannot be terminated."""

    pass


class NotFound(SwarmError, LookupError):
    """Raised when a session or record does not exist."""

    def __init__(self, identifier: str, kind: str = "session"):
        super().__init__(f"{kind.capitalize()} not found: {identifier}")
        self.identifier = identifier
        self.kind = kind


class MalformedLocator(SwarmError, ValueError):
    """Raised when a magnet descriptor cannot be parsed."""

    pass
