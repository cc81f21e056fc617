"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from src.config import get_settings
from src.dependencies import Services
from src.models.workouts import SyncStatusRead
from src.workouts.coordinator import SyncCoordinator

router = APIRouter(tags=["system"])
logger = logging.getLogger("workoutsync.health")


def status_payload(coordinator: SyncCoordinator) -> SyncStatusRead:
    status = coordinator.status()
    return SyncStatusRead(
        device_role=status.device_role,
        bridge_state=status.bridge_state.value,
        cursor=status.cursor,
        pending_push=status.pending_push,
        pending_relay=status.pending_relay,
        link_reachable=status.link_reachable,
        last_error=status.last_error,
        last_sync_at=status.last_sync_at,
        generation=status.generation,
    )


@router.get("/health")
async def health_check(services: Services) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight remote store connectivity check and reports
    the sync state of this device.
    """
    settings = get_settings()
    db_ok = await services.remote.ping()
    if not db_ok:
        logger.warning("Health check: remote store unreachable")

    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "sync": status_payload(services.coordinator).model_dump(mode="json", by_alias=True),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
