"""RemoteSyncBridge: the only component that talks to the remote durable store.

State machine (one cycle at a time per device)::

    idle ──push trigger──▶ pushing ──▶ idle
    idle ──remote change──▶ pulling ──▶ merging ──▶ idle

A pull fetches every change after the SyncCursor, hands each record to the
coordinator to merge, and advances the cursor only after the whole batch
merged. If any merge fails the cursor stays put, so the retry re-fetches
the full batch (merges are idempotent, re-applying is harmless).

Failed pushes leave the record unconfirmed in LocalStore. Nothing here
retries on a timer: the next push, remote notification or manual sync does.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Protocol

from src.models.base import utc_now
from src.models.workouts import WorkoutRecord
from src.workouts.cursor import SyncCursor
from src.workouts.errors import SyncError, TransientError

logger = logging.getLogger("workoutsync.bridge")


class BridgeState(str, Enum):
    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"
    MERGING = "merging"


@dataclass(frozen=True)
class RemoteChange:
    """A record as fetched from the remote store, with its change sequence."""

    record: WorkoutRecord
    change_seq: int


class RemoteRecordStore(Protocol):
    async def upsert(self, record: WorkoutRecord) -> bool: ...

    async def fetch_since(self, cursor: int, limit: int | None = None) -> list[RemoteChange]: ...


@dataclass
class PushResult:
    pushed: int = 0
    pending: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PullResult:
    fetched: int = 0
    merged: int = 0
    cursor: int = 0
    error: str | None = None
    batches: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BridgeStatus:
    state: BridgeState
    cursor: int
    last_error: str | None = None
    last_sync_at: datetime | None = None


class RemoteSyncBridge:
    """Push local commits up and pull remote changes down.

    The bridge never writes LocalStore itself; merges and push
    confirmations go through callables supplied by the coordinator.

    Args:
        remote:         Remote record store.
        cursor:         Persistent pull watermark, owned by this bridge.
        apply_remote:   Merges one pulled record; raising aborts the batch.
        unconfirmed:    Returns local records the remote has not confirmed.
        confirm_pushed: Records that a record's revision reached the remote.
        batch_size:     Maximum changes fetched per pull round-trip.
    """

    def __init__(
        self,
        remote: RemoteRecordStore,
        cursor: SyncCursor,
        apply_remote: Callable[[WorkoutRecord], object],
        unconfirmed: Callable[[], list[WorkoutRecord]],
        confirm_pushed: Callable[[WorkoutRecord], None],
        batch_size: int = 500,
    ) -> None:
        self._remote = remote
        self._cursor = cursor
        self._apply_remote = apply_remote
        self._unconfirmed = unconfirmed
        self._confirm_pushed = confirm_pushed
        self._batch_size = batch_size
        self._lock = asyncio.Lock()
        self._state = BridgeState.IDLE
        self._tasks: set[asyncio.Task] = set()
        self._push_requested = False
        self._pull_requested = False
        self.last_error: str | None = None
        self.last_sync_at: datetime | None = None

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def cursor(self) -> SyncCursor:
        return self._cursor

    def status(self) -> BridgeStatus:
        return BridgeStatus(
            state=self._state,
            cursor=self._cursor.value,
            last_error=self.last_error,
            last_sync_at=self.last_sync_at,
        )

    # ------------------------------------------------------------------
    # Triggers (non-blocking)
    # ------------------------------------------------------------------

    def push(self, record: WorkoutRecord) -> None:
        """Queue ``record`` for upward sync and schedule a push cycle.

        The record is already durable in LocalStore as unconfirmed; this
        only makes sure a push cycle runs soon.
        """
        logger.debug("Push requested for %s rev=%d", record.id, record.revision)
        if self._push_requested:
            return
        self._push_requested = True
        self._spawn(self._push_cycle())

    def on_remote_change(self) -> None:
        """Remote "something changed" signal: schedule a pull-merge cycle."""
        if self._pull_requested:
            return
        self._pull_requested = True
        self._spawn(self._pull_cycle())

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _push_cycle(self) -> None:
        async with self._lock:
            self._push_requested = False
            try:
                await self._flush_locked()
            except SyncError as exc:
                self.last_error = str(exc)
                logger.error("Push cycle aborted: %s", exc)

    async def _pull_cycle(self) -> None:
        async with self._lock:
            self._pull_requested = False
            try:
                result = await self._pull_locked()
                # The remote just spoke to us, so it is worth retrying stalled pushes.
                if result.ok and self._unconfirmed():
                    await self._flush_locked()
            except SyncError as exc:
                self.last_error = str(exc)
                logger.error("Pull cycle aborted: %s", exc)

    async def drain(self) -> None:
        """Wait for every scheduled cycle to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def flush(self) -> PushResult:
        """Push every unconfirmed local write now."""
        async with self._lock:
            return await self._flush_locked()

    async def pull(self) -> PullResult:
        """Fetch and merge everything after the cursor now."""
        async with self._lock:
            return await self._pull_locked()

    async def sync(self) -> tuple[PushResult, PullResult]:
        """Full reconciliation: push unconfirmed writes, then pull."""
        async with self._lock:
            pushed = await self._flush_locked()
            pulled = await self._pull_locked()
        return pushed, pulled

    async def _flush_locked(self) -> PushResult:
        result = PushResult()
        pending = self._unconfirmed()
        if not pending:
            return result

        self._state = BridgeState.PUSHING
        try:
            for record in pending:
                try:
                    applied = await self._remote.upsert(record)
                except TransientError as exc:
                    result.error = str(exc)
                    self.last_error = result.error
                    logger.warning("Push stalled, sync pending: %s", exc)
                    break
                if not applied:
                    logger.debug("Remote already holds a newer %s", record.id)
                # Either way the remote has this revision or a winner over it.
                self._confirm_pushed(record)
                result.pushed += 1
        finally:
            self._state = BridgeState.IDLE

        result.pending = len(pending) - result.pushed
        if result.ok:
            self.last_sync_at = utc_now()
            logger.info("Pushed %d record(s)", result.pushed)
        return result

    async def _pull_locked(self) -> PullResult:
        result = PullResult(cursor=self._cursor.value)
        try:
            while True:
                self._state = BridgeState.PULLING
                try:
                    changes = await self._remote.fetch_since(self._cursor.value, self._batch_size)
                except TransientError as exc:
                    result.error = str(exc)
                    self.last_error = result.error
                    logger.warning("Pull failed, cursor stays at %d: %s", self._cursor.value, exc)
                    return result

                result.fetched += len(changes)
                result.batches += 1
                if not changes:
                    break

                self._state = BridgeState.MERGING
                try:
                    for change in changes:
                        self._apply_remote(change.record)
                        result.merged += 1
                except SyncError as exc:
                    result.error = f"Merge of {change.record.id} failed: {exc}"
                    self.last_error = result.error
                    logger.error(
                        "Pull batch of %d abandoned at %s; cursor stays at %d: %s",
                        len(changes), change.record.id, self._cursor.value, exc,
                    )
                    return result

                try:
                    self._cursor.advance(max(c.change_seq for c in changes))
                except SyncError as exc:
                    result.error = str(exc)
                    self.last_error = result.error
                    logger.error("Merged batch but could not persist cursor: %s", exc)
                    return result
                result.cursor = self._cursor.value
                if len(changes) < self._batch_size:
                    break
        finally:
            self._state = BridgeState.IDLE

        self.last_sync_at = utc_now()
        if result.fetched:
            logger.info("Pulled %d change(s); cursor now %d", result.fetched, result.cursor)
        return result

    def reset_cursor(self) -> None:
        """Rewind to 0. Only valid right after an explicit local-store reset."""
        self._cursor.reset()
