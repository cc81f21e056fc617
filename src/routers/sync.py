"""Sync control endpoints: manual sync, remote change hook, local reset."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException

from src.dependencies import Coordinator
from src.models.workouts import SyncReportRead, SyncStatusRead
from src.routers.health import status_payload
from src.workouts.errors import PermanentLocalError

router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger("workoutsync.api")


@router.get("", response_model=SyncStatusRead)
async def sync_status(coordinator: Coordinator) -> Any:
    return status_payload(coordinator)


@router.post("", response_model=SyncReportRead)
async def manual_sync(coordinator: Coordinator) -> Any:
    """Push and relay every unconfirmed write, then pull everything new."""
    report = await coordinator.manual_sync()
    return SyncReportRead(
        relayed=report.relayed,
        pushed=report.pushed,
        pulled=report.pulled,
        merged=report.merged,
        archived=report.archived,
        ok=report.ok,
        errors=report.errors,
    )


@router.post("/remote-change", status_code=202)
async def remote_change(coordinator: Coordinator) -> dict:
    """External "something changed" hook for deployments without LISTEN/NOTIFY."""
    coordinator.on_remote_change()
    return {"scheduled": True}


@router.post("/reset", response_model=SyncStatusRead)
async def reset_local_store(coordinator: Coordinator) -> Any:
    """Wipe local records and refetch everything on the next pull."""
    try:
        coordinator.reset_local_store()
    except PermanentLocalError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    logger.warning("Local store reset requested over HTTP")
    coordinator.on_remote_change()
    return status_payload(coordinator)
