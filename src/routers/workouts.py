"""Workout log endpoints: list, create (with optional audio note), delete."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from fastapi import APIRouter, File, Form, HTTPException, Query, Response, UploadFile

from src.dependencies import AppSettings, Coordinator
from src.models.workouts import WorkoutRecord
from src.workouts.errors import LocalStoreError

router = APIRouter(prefix="/workouts", tags=["workouts"])
logger = logging.getLogger("workoutsync.api")


def _save_scratch(data: bytes, target: Path) -> None:
    # Written under a .part name so an orphan sweep never picks up half a file.
    partial = target.with_name(target.name + ".part")
    partial.write_bytes(data)
    partial.replace(target)


@router.get("", response_model=list[WorkoutRecord])
async def list_workouts(
    coordinator: Coordinator,
    include_deleted: bool = Query(default=False),
) -> Any:
    """All workouts, most recent first."""
    return coordinator.list_records(include_deleted=include_deleted)


@router.get("/{workout_id}", response_model=WorkoutRecord)
async def get_workout(workout_id: uuid.UUID, coordinator: Coordinator) -> Any:
    record = coordinator.get_record(workout_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Workout not found")
    return record


@router.post("", response_model=WorkoutRecord, status_code=201)
async def create_workout(
    coordinator: Coordinator,
    settings: AppSettings,
    occurred_at: datetime = Form(...),
    duration_seconds: float = Form(..., ge=0),
    audio: UploadFile | None = File(default=None),
) -> Any:
    """Log a workout on this device.

    The record is committed locally before the response is sent; relay,
    archival of the audio note and the remote push happen afterwards.
    """
    scratch: Path | None = None
    if audio is not None:
        content_type = audio.content_type or "application/octet-stream"
        if content_type not in settings.allowed_audio_types:
            raise HTTPException(
                status_code=400,
                detail=f"Audio type '{content_type}' not allowed. Accepted: {settings.allowed_audio_types}",
            )
        data = await audio.read()
        if len(data) > settings.max_audio_size_bytes:
            raise HTTPException(
                status_code=400,
                detail=f"Audio too large. Max size: {settings.max_audio_size_bytes // (1024*1024)} MB",
            )
        extension = Path(audio.filename or "").suffix or ".m4a"
        scratch = coordinator.scratch_path_for(occurred_at, extension)
        try:
            await asyncio.to_thread(_save_scratch, data, scratch)
        except OSError as exc:
            logger.error("Cannot write audio note to %s: %s", scratch, exc)
            raise HTTPException(status_code=503, detail="Cannot store audio note") from exc

    try:
        return coordinator.submit_record(occurred_at, duration_seconds, audio_file=scratch)
    except LocalStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.delete("/{workout_id}", status_code=204)
async def delete_workout(workout_id: uuid.UUID, coordinator: Coordinator) -> Response:
    try:
        coordinator.delete_record(workout_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Workout not found")
    except LocalStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return Response(status_code=204)
