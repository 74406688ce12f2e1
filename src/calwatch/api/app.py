"""Calwatch HTTP API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- Lifespan handler that starts the notification scheduler and closes the
  engine's resources on shutdown
- Health endpoint at GET /api/health
- Prometheus metrics at GET /metrics
- OAuth connect flow, push webhook, and slash-command routers
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from calwatch import __version__
from calwatch.api.middleware import register_error_handlers
from calwatch.api.models import HealthResponse
from calwatch.api.routers.command import router as command_router
from calwatch.api.routers.oauth import router as oauth_router
from calwatch.api.routers.watch import router as watch_router
from calwatch.engine import CalendarSyncEngine

logger = logging.getLogger(__name__)


def create_app(engine: CalendarSyncEngine, *, run_scheduler: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    engine:
        The fully built engine. The app takes ownership and closes it on
        shutdown.
    run_scheduler:
        Start the notification scheduler in the lifespan. Tests pass
        ``False`` and drive ticks directly.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_scheduler:
            engine.start()
        try:
            yield
        finally:
            await engine.aclose()
            logger.info("Calendar sync engine closed")

    app = FastAPI(title="Calwatch", version=__version__, lifespan=lifespan)
    app.router.redirect_slashes = False
    app.state.engine = engine

    register_error_handlers(app)

    app.include_router(oauth_router)
    app.include_router(watch_router)
    app.include_router(command_router)

    @app.get("/api/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", scheduler_running=engine.scheduler.running)

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    return app
