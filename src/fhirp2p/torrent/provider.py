"""Single-flight construction of the transfer engine client."""

import asyncio
import logging

from ..config import Settings
from ..errors import EngineUnavailable, SwarmError
from .engine import EngineClient, EngineFactory

logger = logging.getLogger(__name__)


def _default_factory() -> EngineFactory:
    from .libtorrent_engine import create_libtorrent_client

    return create_libtorrent_client


class ClientProvider:
    """
    Owns the engine client for the lifetime of the application.

    Guarantees at most one construction in flight: concurrent callers of
    initialize() await the same attempt. A successful client is cached until
    shutdown(); a failed attempt is forgotten so a later call can retry.
    """

    def __init__(
        self,
        settings: Settings,
        factory: EngineFactory | None = None,
    ):
        """
        Initialize the provider.

        Args:
            settings: Application settings used to build engine config
            factory: Coroutine constructing a client from EngineConfig.
                     Defaults to the libtorrent engine.
        """
        self.settings = settings
        self.factory = factory or _default_factory()
        self._client: EngineClient | None = None
        self._pending: asyncio.Task[EngineClient] | None = None

    @property
    def client(self) -> EngineClient | None:
        """The constructed client, or None if not ready."""
        return self._client

    @property
    def is_ready(self) -> bool:
        return self._client is not None

    @property
    def is_initializing(self) -> bool:
        return self._pending is not None

    async def initialize(self) -> EngineClient:
        """
        Return the engine client, constructing it on first use.

        Raises:
            EngineUnavailable: If the engine cannot be loaded
            ConfigurationError: If required settings are absent
        """
        if self._client is not None:
            return self._client

        if self._pending is None:
            logger.info("Starting transfer engine initialization")
            self._pending = asyncio.create_task(self._construct())
        else:
            logger.debug("Transfer engine initialization in progress")

        # Shield so one cancelled caller does not abort the shared attempt
        return await asyncio.shield(self._pending)

    async def _construct(self) -> EngineClient:
        try:
            config = self.settings.engine_config()
            client = await self.factory(config)
            client.on("error", self._on_client_error)
            self._client = client
            logger.info(f"Transfer engine initialized: {client.name}")
            return client
        except SwarmError as e:
            logger.error(f"Transfer engine initialization failed: {e}")
            raise
        except Exception as e:
            logger.error(f"Transfer engine initialization failed: {e}")
            raise EngineUnavailable(f"Failed to construct engine client: {e}") from e
        finally:
            self._pending = None

    @staticmethod
    def _on_client_error(error: Exception) -> None:
        logger.error(f"Transfer engine error: {error}")

    async def shutdown(self) -> None:
        """Close the client and reset the provider."""
        pending = self._pending
        if pending is not None:
            try:
                await pending
            except Exception as e:
                logger.debug(f"Pending initialization failed during shutdown: {e}")

        client = self._client
        self._client = None
        if client is not None:
            client.off("error", self._on_client_error)
            await client.close()
            logger.info("Transfer engine shut down")
