"""Pydantic models for workout records, link messages and sync status."""

from __future__ import annotations

import hashlib
import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import ConfigDict, Field, field_validator

from src.models.base import WorkoutSyncBase, as_utc

# Device tags the watch and phone apps historically wrote into ``source``.
_LEGACY_ORIGIN_TAGS = {
    "watch": "companion",
    "iphone": "primary",
    "phone": "primary",
}


class Origin(str, Enum):
    """Which device created a record. Primary wins equal-revision ties."""

    PRIMARY = "primary"
    COMPANION = "companion"

    @property
    def rank(self) -> int:
        return 1 if self is Origin.PRIMARY else 0

    @property
    def device_tag(self) -> str:
        """Short tag embedded in scratch artifact filenames."""
        return "phone" if self is Origin.PRIMARY else "watch"


def _normalize_origin(value: Any) -> Any:
    if isinstance(value, str):
        lowered = value.strip().lower()
        return _LEGACY_ORIGIN_TAGS.get(lowered, lowered)
    return value


# ---------- Workout records ----------

class WorkoutRecord(WorkoutSyncBase):
    """One logical workout, identical on every device once converged.

    ``revision`` orders competing versions of the same ``id``. A record with
    ``tombstone=True`` is a logical deletion kept around so the deletion can
    propagate like any other update.
    """

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    occurred_at: datetime
    duration_seconds: float = Field(ge=0)
    origin: Origin
    audio_artifact_ref: str | None = None
    revision: int = Field(default=0, ge=0)
    tombstone: bool = False

    @field_validator("occurred_at")
    @classmethod
    def _occurred_at_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_validator("origin", mode="before")
    @classmethod
    def _origin_tag(cls, value: Any) -> Any:
        return _normalize_origin(value)

    def content(self) -> dict[str, Any]:
        """Everything except the revision, JSON-ready."""
        return self.model_dump(mode="json", exclude={"revision"})

    def same_content(self, other: WorkoutRecord) -> bool:
        return self.content() == other.content()

    def content_hash(self) -> str:
        """SHA-256 of the canonical JSON form, revision included.

        Used as the last tie-break so every device picks the same winner.
        """
        canonical = json.dumps(self.model_dump(mode="json"), sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()

    def precedence(self) -> tuple[int, int, int, str]:
        """Sort key for last-writer-wins: higher wins.

        Revision first; at equal revision a tombstone beats a live record,
        then Primary beats Companion, then the content hash decides.
        """
        return (self.revision, int(self.tombstone), self.origin.rank, self.content_hash())


# ---------- Link wire format ----------

class LinkMessage(WorkoutSyncBase):
    """A record as relayed between companion and primary.

    Audio is never carried inline; it is archived separately and referenced
    by its artifact name.
    """

    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID
    occurred_at: datetime
    duration_seconds: float = Field(ge=0)
    origin: Origin
    revision: int = Field(default=1, ge=1)
    tombstone: bool = False
    audio_artifact_ref: str | None = None

    @field_validator("occurred_at")
    @classmethod
    def _occurred_at_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_validator("origin", mode="before")
    @classmethod
    def _origin_tag(cls, value: Any) -> Any:
        return _normalize_origin(value)

    @classmethod
    def from_record(cls, record: WorkoutRecord) -> LinkMessage:
        return cls(
            id=record.id,
            occurred_at=record.occurred_at,
            duration_seconds=record.duration_seconds,
            origin=record.origin,
            revision=max(record.revision, 1),
            tombstone=record.tombstone,
            audio_artifact_ref=record.audio_artifact_ref,
        )

    def to_record(self) -> WorkoutRecord:
        return WorkoutRecord(
            id=self.id,
            occurred_at=self.occurred_at,
            duration_seconds=self.duration_seconds,
            origin=self.origin,
            revision=self.revision,
            tombstone=self.tombstone,
            audio_artifact_ref=self.audio_artifact_ref,
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------- API ----------

class ReachabilityUpdate(WorkoutSyncBase):
    reachable: bool


class SyncStatusRead(WorkoutSyncBase):
    device_role: str
    bridge_state: str
    cursor: int
    pending_push: int
    pending_relay: int
    link_reachable: bool
    last_error: str | None = None
    last_sync_at: datetime | None = None
    generation: int = 0


class SyncReportRead(WorkoutSyncBase):
    relayed: int = 0
    pushed: int = 0
    pulled: int = 0
    merged: int = 0
    archived: int = 0
    ok: bool = True
    errors: list[str] = Field(default_factory=list)
