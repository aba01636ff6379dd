"""FastAPI web application for fhirp2p."""

import logging

from fastapi import FastAPI

from .. import __version__
from ..config import Settings, build_settings
from ..errors import SwarmError
from ..records import SqliteRecordStore
from ..torrent import ClientProvider, EngineFactory, SwarmManager
from .api import router as api_router

logger = logging.getLogger(__name__)


class AppState:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.store: SqliteRecordStore | None = None  # Initialized in startup
        self.provider: ClientProvider | None = None  # Initialized in startup
        self.manager: SwarmManager | None = None  # Initialized in startup


def create_app(
    settings: Settings | None = None,
    factory: EngineFactory | None = None,
) -> FastAPI:
    """
    Build the web application.

    Args:
        settings: Application settings (loaded from config/env if None)
        factory: Engine factory override, defaults to libtorrent
    """
    settings = settings or build_settings()
    state = AppState(settings)

    app = FastAPI(title="fhirp2p", version=__version__)
    app.include_router(api_router)
    app.state.api_key = settings.api_key
    app.state.manager = None

    @app.on_event("startup")
    async def startup_event():
        """Open the record store and start the swarm manager."""
        db_path = settings.resolved_database_path()
        state.store = SqliteRecordStore(db_path)
        await state.store.connect()
        logger.info(f"Record store opened at {db_path}")

        state.provider = ClientProvider(settings, factory)
        state.manager = SwarmManager(state.provider, state.store)

        try:
            await state.manager.start()
        except SwarmError as e:
            # The first request that brings the engine up also runs the deferred restore
            logger.warning(f"Transfer engine not started: {e}")

        if not settings.api_key:
            logger.warning("No API key configured, API access is unauthenticated")

        app.state.manager = state.manager

    @app.on_event("shutdown")
    async def shutdown_event():
        """Stop sessions and close the record store."""
        app.state.manager = None
        if state.manager:
            await state.manager.shutdown()
        if state.store:
            await state.store.close()

    @app.get("/api/status")
    async def get_status():
        """Get current status."""
        manager = state.manager
        return {
            "version": __version__,
            "engine_ready": bool(manager and manager.provider.is_ready),
            "sessions": len(manager.registry) if manager else 0,
        }

    return app


def run_server(settings: Settings | None = None):
    """Run the web server."""
    import uvicorn

    settings = settings or build_settings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
