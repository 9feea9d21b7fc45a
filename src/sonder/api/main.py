"""FastAPI application factory."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from sonder.api.routes import logs, sync as sync_routes, trips
from sonder.remote.auth import NoSessionError, SessionExpiredError

logger = logging.getLogger(__name__)


def create_app(start_sync: bool = True) -> FastAPI:
    """Build and return the FastAPI app.

    Args:
        start_sync: Connect the backend and start the sync timer on startup.
            Tests pass False and drive the engine directly.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        from sonder.sync.runtime import get_sync_engine

        sync_engine = get_sync_engine() if start_sync else None
        if sync_engine is not None:
            try:
                await sync_engine.backend.connect()
            except (NoSessionError, SessionExpiredError) as exc:
                # Local writes still work; the loop idles until login
                logger.warning("%s", exc)
            await sync_engine.start()
        yield
        if sync_engine is not None:
            await sync_engine.stop()

    app = FastAPI(
        title="Sonder Sync API",
        description="Local write paths and sync status for the sonder app",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(logs.router, prefix="/logs", tags=["logs"])
    app.include_router(trips.router, prefix="/trips", tags=["trips"])
    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    return app


# Module-level app instance for uvicorn
app = create_app()
