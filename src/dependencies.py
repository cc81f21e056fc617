"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.workouts.container import ServiceContainer
from src.workouts.coordinator import SyncCoordinator


async def get_container(request: Request) -> ServiceContainer:
    """Return the services the lifespan started for this app."""
    container: ServiceContainer | None = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Sync services not started")
    return container


async def get_coordinator(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> SyncCoordinator:
    return container.coordinator


# Annotated shortcuts for route signatures
Services = Annotated[ServiceContainer, Depends(get_container)]
Coordinator = Annotated[SyncCoordinator, Depends(get_coordinator)]
AppSettings = Annotated[Settings, Depends(get_settings)]
