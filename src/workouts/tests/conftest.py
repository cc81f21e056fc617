"""Shared fixtures and fakes for workout sync tests."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable
from uuid import UUID

import pytest

from src.models.workouts import Origin, WorkoutRecord
from src.workouts.archiver import ArtifactArchiver
from src.workouts.bridge import RemoteChange
from src.workouts.coordinator import SyncCoordinator
from src.workouts.cursor import SyncCursor
from src.workouts.errors import TransientError
from src.workouts.link import LinkChannel
from src.workouts.local_store import LocalStore
from src.workouts.namespace import DirectoryNamespace

RECORD_A = UUID("12345678-1234-5678-1234-567812345678")
RECORD_B = UUID("87654321-4321-8765-4321-876543218765")
TEST_TIME = datetime(2026, 2, 23, 6, 45, tzinfo=timezone.utc)


def make_record(
    record_id: UUID = RECORD_A,
    revision: int = 1,
    origin: Origin = Origin.COMPANION,
    duration: float = 42.0,
    tombstone: bool = False,
    occurred_at: datetime = TEST_TIME,
    audio_artifact_ref: str | None = None,
) -> WorkoutRecord:
    return WorkoutRecord(
        id=record_id,
        occurred_at=occurred_at,
        duration_seconds=duration,
        origin=origin,
        revision=revision,
        tombstone=tombstone,
        audio_artifact_ref=audio_artifact_ref,
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class InMemoryRemoteStore:
    """Remote record store with the same conditional-upsert rule as Postgres."""

    def __init__(self) -> None:
        self.rows: dict[UUID, RemoteChange] = {}
        self.seq = 0
        self.fail_upsert = False
        self.fail_fetch = False
        self.upserts: list[WorkoutRecord] = []
        self.fetches: list[tuple[int, int | None]] = []
        self.on_change: Callable[[], None] | None = None

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def ping(self) -> bool:
        return not self.fail_fetch

    async def subscribe(self, on_change: Callable[[], None]) -> None:
        self.on_change = on_change

    async def upsert(self, record: WorkoutRecord) -> bool:
        if self.fail_upsert:
            raise TransientError("remote store offline")
        self.upserts.append(record)
        current = self.rows.get(record.id)
        if current is not None and record.precedence() <= current.record.precedence():
            return False
        self.seq += 1
        self.rows[record.id] = RemoteChange(record=record, change_seq=self.seq)
        return True

    async def fetch_since(self, cursor: int, limit: int | None = None) -> list[RemoteChange]:
        self.fetches.append((cursor, limit))
        if self.fail_fetch:
            raise TransientError("remote store offline")
        changes = sorted(
            (c for c in self.rows.values() if c.change_seq > cursor),
            key=lambda c: c.change_seq,
        )
        return changes[:limit] if limit is not None else changes

    def seed(self, record: WorkoutRecord) -> None:
        """Insert a row as if another device had pushed it."""
        self.seq += 1
        self.rows[record.id] = RemoteChange(record=record, change_seq=self.seq)


class RecordingTransport:
    """Link transport that records payloads and optionally forwards them to a peer."""

    def __init__(self, peer: LinkChannel | None = None) -> None:
        self.peer = peer
        self.sent: list[dict[str, Any]] = []
        self.fail = False
        self.closed = False

    async def deliver(self, payload: dict[str, Any]) -> None:
        if self.fail:
            raise TransientError("peer out of range")
        self.sent.append(payload)
        if self.peer is not None:
            await self.peer.receive(payload)

    async def aclose(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    s = LocalStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def archive_root(tmp_path: Path) -> Path:
    root = tmp_path / "archive"
    root.mkdir()
    return root


@pytest.fixture
def scratch_dir(tmp_path: Path) -> Path:
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def archiver(archive_root: Path, scratch_dir: Path) -> ArtifactArchiver:
    return ArtifactArchiver(DirectoryNamespace(archive_root), scratch_dir)


@pytest.fixture
def remote() -> InMemoryRemoteStore:
    return InMemoryRemoteStore()


@pytest.fixture
def make_coordinator(tmp_path: Path, archive_root: Path, remote: InMemoryRemoteStore):
    """Factory for one device sharing the test's remote store and archive."""
    created: list[SyncCoordinator] = []

    def _make(
        role: Origin,
        link: LinkChannel | None = None,
        device_model: str = "Watch7,2",
    ) -> SyncCoordinator:
        scratch = tmp_path / f"scratch-{role.value}"
        scratch.mkdir(exist_ok=True)
        coordinator = SyncCoordinator(
            store=LocalStore(":memory:"),
            archiver=ArtifactArchiver(DirectoryNamespace(archive_root), scratch),
            link=link or LinkChannel(),
            remote=remote,
            cursor=SyncCursor(),
            role=role,
            device_model=device_model,
        )
        created.append(coordinator)
        return coordinator

    yield _make
    for coordinator in created:
        coordinator.store.close()
