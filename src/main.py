"""Workout Sync API — FastAPI application entry point.

One process per device. The companion posts link messages to the primary's
``/api/v1/link/records`` and vice versa.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from src.config import get_settings
from src.routers import health, link, sync, workouts
from src.workouts.container import ServiceContainer

# ---------- Logging ----------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("workoutsync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build (unless injected), start and stop the sync services."""
    settings = get_settings()
    logger.setLevel(settings.log_level.upper())
    logger.info(
        "Starting Workout Sync v%s [%s] as %s",
        settings.app_version,
        settings.environment,
        settings.device_role,
    )
    container: ServiceContainer | None = getattr(app.state, "container", None)
    if container is None:
        container = ServiceContainer.build(settings)
        app.state.container = container
    await container.start()
    yield
    await container.shutdown()
    logger.info("Workout Sync shut down")


# ---------- App factory ----------

def create_app(container: ServiceContainer | None = None) -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Workout Sync API",
        description=(
            "Local-first workout log synced between a companion and a primary "
            "device, a remote record store and an audio archive."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.container = container

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(workouts.router, prefix=v1_prefix)
    app.include_router(link.router, prefix=v1_prefix)
    app.include_router(sync.router, prefix=v1_prefix)

    return app


app = create_app()
