"""Peer-device link endpoints: inbound records and presence signals."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body

from src.dependencies import Services
from src.models.workouts import ReachabilityUpdate

router = APIRouter(prefix="/link", tags=["link"])


@router.post("/records", status_code=202)
async def receive_record(services: Services, payload: Any = Body(...)) -> dict:
    """Accept one relayed record from the peer.

    Always 202 for a JSON body: malformed messages are logged and dropped,
    and the sender never retries on our account.
    """
    record = await services.link.receive(payload)
    return {"accepted": record is not None}


@router.post("/reachability")
async def set_reachability(services: Services, body: ReachabilityUpdate) -> dict:
    """Presence callback: the peer came into or went out of range."""
    await services.link.set_reachable(body.reachable)
    return {"reachable": services.link.reachable}
