"""Chain Mirror - FastAPI Application.

Read-side HTTP surface over the synchronizer: health, sync status,
manual trigger and a websocket of mirror updates.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chainmirror import __version__
from chainmirror.api import sync
from chainmirror.core.config import Settings, get_settings
from chainmirror.models.schemas import HealthResponse, LastPassSummary
from chainmirror.services.listener import ListenerState
from chainmirror.services.runtime import SyncRuntime, build_runtime

logger = logging.getLogger(__name__)


def create_app(runtime: Optional[SyncRuntime] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the app. Without a runtime, one is built from settings when the
    app starts, so importing this module never touches the network.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = runtime or await build_runtime(settings)
        app.state.runtime = active
        await active.start()
        try:
            yield
        finally:
            await active.stop()
            app.state.runtime = None

    app = FastAPI(
        title=settings.APP_NAME,
        description="Chain Mirror - ledger to store synchronizer",
        version=__version__,
        debug=settings.DEBUG,
        lifespan=lifespan,
    )
    app.state.runtime = None

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(sync.router)

    @app.get("/")
    async def root():
        """Service banner."""
        return {
            "service": settings.APP_NAME,
            "version": __version__,
            "status": "operational",
        }

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Listener and coordinator state."""
        active: Optional[SyncRuntime] = app.state.runtime
        if active is None:
            return HealthResponse(
                status="stopped",
                listener=ListenerState.DISCONNECTED.value,
                polling=False,
                sync_running=False,
                passes_completed=0,
            )

        coordinator = active.coordinator
        last = coordinator.last_report
        healthy = last is None or last.ok
        return HealthResponse(
            status="healthy" if healthy else "degraded",
            listener=active.listener.state.value,
            polling=active.listener.is_polling,
            sync_running=coordinator.is_running,
            passes_completed=coordinator.passes_completed,
            last_pass=LastPassSummary.from_report(last) if last else None,
        )

    return app


app = create_app()
