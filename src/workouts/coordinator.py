"""SyncCoordinator: the one entry point the UI layer talks to.

Outbound path for a new record::

    submit_record ─▶ LocalStore.write (synchronous, immediately visible)
                  ├─▶ LinkChannel.send          (companion only, background)
                  ├─▶ ArtifactArchiver.archive  (if audio, background)
                  └─▶ RemoteSyncBridge.push     (background)

Inbound paths::

    LinkChannel receive   ─▶ apply_inbound        ─▶ LocalStore.merge ─▶ bridge push
    remote notification   ─▶ bridge pull          ─▶ apply_remote_record ─▶ LocalStore.merge

Every LocalStore commit is published on ``bus`` so subscribers (UI) refresh.
Background work never raises into the caller: failures are logged and kept
in ``status().last_error`` until the next natural trigger retries them.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Coroutine

from src.models.workouts import Origin, WorkoutRecord
from src.workouts.archiver import (
    ArchivedArtifact,
    ArtifactArchiver,
    ReconcileReport,
    scratch_filename,
)
from src.workouts.bridge import BridgeState, RemoteRecordStore, RemoteSyncBridge
from src.workouts.cursor import SyncCursor
from src.workouts.errors import ArchiveError, SyncError
from src.workouts.events import ChangeBus, ChangeHandler, Subscription
from src.workouts.link import LinkChannel, SendOutcome
from src.workouts.local_store import LocalStore, MergeOutcome

logger = logging.getLogger("workoutsync.coordinator")


@dataclass
class SyncReport:
    """Result of a user-triggered ``manual_sync``."""

    relayed: int = 0
    pushed: int = 0
    pulled: int = 0
    merged: int = 0
    archived: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class SyncStatus:
    device_role: str
    bridge_state: BridgeState
    cursor: int
    pending_push: int
    pending_relay: int
    link_reachable: bool
    last_error: str | None
    last_sync_at: datetime | None
    generation: int


class SyncCoordinator:
    """Orchestrates LocalStore, LinkChannel, ArtifactArchiver and RemoteSyncBridge.

    Args:
        store:        The device's LocalStore.
        archiver:     Artifact archiver for audio notes.
        link:         Channel to the peer device.
        remote:       Remote durable record store.
        cursor:       Pull watermark handed to the bridge.
        role:         This device's origin; stamped on every submitted record.
        device_model: Embedded in scratch artifact filenames.
        orphan_sweep_interval: Seconds between orphan sweeps (0 disables).
    """

    def __init__(
        self,
        store: LocalStore,
        archiver: ArtifactArchiver,
        link: LinkChannel,
        remote: RemoteRecordStore,
        cursor: SyncCursor | None = None,
        role: Origin = Origin.PRIMARY,
        device_model: str = "unknown",
        orphan_sweep_interval: float = 0,
    ) -> None:
        self.store = store
        self.archiver = archiver
        self.link = link
        self.role = role
        self.device_model = device_model
        self.bus = ChangeBus()
        self.store.set_change_listener(self.bus.publish)
        self.bridge = RemoteSyncBridge(
            remote,
            cursor or SyncCursor(),
            apply_remote=self.apply_remote_record,
            unconfirmed=self.store.pending_push,
            confirm_pushed=self._confirm_pushed,
        )
        self._orphan_sweep_interval = orphan_sweep_interval
        self._tasks: set[asyncio.Task] = set()
        self._sweep_task: asyncio.Task | None = None
        self._unregister: list[Any] = []
        self._last_error: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Wire channel callbacks, kick an initial sync and start the orphan sweep."""
        self._unregister.append(self.link.on_receive(self.apply_inbound))
        self._unregister.append(self.link.on_reachable(self.relay_pending))
        # Startup is a natural retry point for anything left unconfirmed.
        self.bridge.on_remote_change()
        if self.role is Origin.COMPANION:
            self._spawn(self.relay_pending())
        if self._orphan_sweep_interval > 0:
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())
        logger.info("Coordinator started as %s (%s)", self.role.value, self.device_model)

    async def shutdown(self) -> None:
        """Stop the sweep and let in-flight fan-out work finish."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        await self.drain()
        for unregister in self._unregister:
            unregister()
        self._unregister.clear()
        logger.info("Coordinator stopped")

    async def drain(self) -> None:
        """Wait until every background task (fan-out and bridge cycles) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.bridge.drain()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # UI boundary
    # ------------------------------------------------------------------

    def submit_record(
        self,
        occurred_at: datetime,
        duration_seconds: float,
        audio_file: str | Path | None = None,
        record_id: uuid.UUID | None = None,
    ) -> WorkoutRecord:
        """Create a workout on this device.

        The local write is synchronous: the returned record is already in
        ``list_records()``. Relay, archival and remote push run in the
        background.

        Raises:
            LocalStoreError: The record was not committed.
        """
        record = WorkoutRecord(
            id=record_id or uuid.uuid4(),
            occurred_at=occurred_at,
            duration_seconds=duration_seconds,
            origin=self.role,
        )
        stored = self._commit(record)
        logger.info(
            "Workout %s created on %s (%.1fs%s)",
            stored.id, self.role.value, stored.duration_seconds,
            ", with audio" if audio_file else "",
        )
        self._fan_out(stored)
        if audio_file is not None:
            path = Path(audio_file)
            try:
                self.archiver.claim(path, stored.id)
            except ArchiveError as exc:
                logger.warning("Could not claim %s for %s: %s", path.name, stored.id, exc)
            self._spawn(self._archive_and_link(path, stored.id))
        return stored

    def delete_record(self, record_id: uuid.UUID) -> WorkoutRecord:
        """Logically delete a workout by writing a tombstone at a new revision.

        Raises:
            KeyError:        No such record.
            LocalStoreError: The tombstone was not committed.
        """
        current = self.store.read(record_id)
        if current is None:
            raise KeyError(str(record_id))
        if current.tombstone:
            return current
        stored = self._commit(current.model_copy(update={"tombstone": True}))
        logger.info("Workout %s deleted (rev=%d)", stored.id, stored.revision)
        self._fan_out(stored)
        return stored

    def list_records(self, include_deleted: bool = False) -> list[WorkoutRecord]:
        return self.store.list_all(include_deleted=include_deleted)

    def get_record(self, record_id: uuid.UUID) -> WorkoutRecord | None:
        return self.store.read(record_id)

    def on_data_changed(self, handler: ChangeHandler) -> Subscription:
        """Subscribe to data-changed events. Use the result as a context manager."""
        return self.bus.subscribe(handler)

    def scratch_path_for(self, occurred_at: datetime, extension: str = ".m4a") -> Path:
        """Where capture should write a new audio note for this device."""
        self.archiver.scratch_dir.mkdir(parents=True, exist_ok=True)
        name = scratch_filename(occurred_at, self.role, self.device_model, extension)
        return self.archiver.scratch_dir / name

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def apply_inbound(self, record: WorkoutRecord) -> MergeOutcome:
        """Apply a record relayed by the peer device.

        Duplicates and stale copies are absorbed by the merge; only a record
        that actually changed local state is pushed onwards.
        """
        outcome = self.store.merge(record)
        self.store.mark_relayed(record.id, record.revision)
        if outcome.applied:
            logger.info("Inbound %s rev=%d from %s: %s",
                        record.id, record.revision, record.origin.value, outcome.value)
            self.bridge.push(record)
        return outcome

    def apply_remote_record(self, record: WorkoutRecord) -> MergeOutcome:
        """Merge one record pulled from the remote store."""
        outcome = self.store.merge(record)
        # The remote holds this revision and the peer can pull it from there.
        self.store.mark_pushed(record.id, record.revision)
        self.store.mark_relayed(record.id, record.revision)
        return outcome

    def on_remote_change(self) -> None:
        self.bridge.on_remote_change()

    async def set_link_reachable(self, reachable: bool) -> None:
        await self.link.set_reachable(reachable)

    # ------------------------------------------------------------------
    # Sync operations
    # ------------------------------------------------------------------

    async def manual_sync(self) -> SyncReport:
        """Full reconciliation: relay and push every unconfirmed write, then pull."""
        report = SyncReport()
        report.relayed = await self.relay_pending()

        pushed, pulled = await self.bridge.sync()
        report.pushed = pushed.pushed
        report.pulled = pulled.fetched
        report.merged = pulled.merged
        for error in (pushed.error, pulled.error):
            if error:
                report.errors.append(error)

        sweep = await self.sweep_orphans()
        report.archived = len(sweep.archived)
        report.errors.extend(f"{name}: {reason}" for name, reason in sweep.failed.items())

        logger.info(
            "Manual sync: relayed=%d pushed=%d pulled=%d archived=%d errors=%d",
            report.relayed, report.pushed, report.pulled, report.archived, len(report.errors),
        )
        return report

    async def relay_pending(self) -> int:
        """Offer every unrelayed local record to the peer (companion only).

        Stops at the first unreachable send; the rest wait for the next
        reachability signal.
        """
        if self.role is not Origin.COMPANION or not self.link.configured:
            return 0
        relayed = 0
        for record in self.store.pending_relay():
            if await self._relay(record) is SendOutcome.UNREACHABLE:
                break
            relayed += 1
        if relayed:
            logger.info("Relayed %d pending record(s) to primary", relayed)
        return relayed

    async def sweep_orphans(self) -> ReconcileReport:
        """Archive leftover scratch files and link them to their records."""
        report = await self.archiver.reconcile_orphans()
        for artifact in report.archived:
            self._link_artifact(artifact)
        if report.failed:
            self._last_error = f"{len(report.failed)} artifact(s) pending archival"
        return report

    def reset_local_store(self) -> None:
        """Wipe local records and rewind the cursor so the next pull refetches everything."""
        self.store.reset()
        self.bridge.reset_cursor()
        self._last_error = None

    def status(self) -> SyncStatus:
        bridge = self.bridge.status()
        return SyncStatus(
            device_role=self.role.value,
            bridge_state=bridge.state,
            cursor=bridge.cursor,
            pending_push=len(self.store.pending_push()),
            pending_relay=(
                len(self.store.pending_relay()) if self.role is Origin.COMPANION else 0
            ),
            link_reachable=self.link.reachable,
            last_error=bridge.last_error or self._last_error,
            last_sync_at=bridge.last_sync_at,
            generation=self.store.generation,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _commit(self, record: WorkoutRecord) -> WorkoutRecord:
        revision = self.store.write(record)
        return record.model_copy(update={"revision": revision})

    def _fan_out(self, record: WorkoutRecord) -> None:
        if self.role is Origin.COMPANION:
            self._spawn(self._relay(record))
        self.bridge.push(record)

    def _confirm_pushed(self, record: WorkoutRecord) -> None:
        self.store.mark_pushed(record.id, record.revision)

    async def _relay(self, record: WorkoutRecord) -> SendOutcome:
        outcome = await self.link.send(record)
        if outcome is SendOutcome.DELIVERED:
            try:
                self.store.mark_relayed(record.id, record.revision)
            except SyncError as exc:
                logger.error("Could not record relay of %s: %s", record.id, exc)
        return outcome

    async def _archive_and_link(self, path: Path, record_id: uuid.UUID) -> None:
        try:
            artifact = await self.archiver.archive(path, path.name, record_id=record_id)
        except ArchiveError as exc:
            self._last_error = f"Archive of {path.name} pending: {exc}"
            logger.warning(
                "Archive of %s failed (%s); will retry on next sweep", path.name, exc.reason.value
            )
            return
        self._link_artifact(artifact)

    def _link_artifact(self, artifact: ArchivedArtifact) -> None:
        """Point the owning record at the archived artifact's final name."""
        if artifact.record_id is None or artifact.remote_name is None:
            return
        current = self.store.read(artifact.record_id)
        if current is None or current.tombstone:
            return
        if current.audio_artifact_ref == artifact.remote_name:
            return
        try:
            stored = self._commit(
                current.model_copy(update={"audio_artifact_ref": artifact.remote_name})
            )
        except SyncError as exc:
            self._last_error = str(exc)
            logger.error("Could not link artifact %s to %s: %s",
                         artifact.remote_name, artifact.record_id, exc)
            return
        self._fan_out(stored)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._orphan_sweep_interval)
            try:
                await self.sweep_orphans()
            except SyncError as exc:
                logger.error("Orphan sweep failed: %s", exc)
