"""LocalStore: the on-device record table and the single writer of committed state.

Every mutation (``write``, ``merge``, bookkeeping marks, ``reset``) runs inside
one critical section, so readers never observe a half-applied record and a
read after a write always sees it.

Records are stored in sqlite as their JSON form plus a few indexed columns:

    workout_records(id PK, revision, tombstone, occurred_at, payload,
                    pushed_revision, relayed_revision)

``pushed_revision`` / ``relayed_revision`` record the highest revision
confirmed by the remote store and by the peer device, which is how the set
of unconfirmed local writes survives a restart.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from enum import Enum
from pathlib import Path
from typing import Callable

from src.models.workouts import WorkoutRecord
from src.workouts.errors import LocalStoreError, StoreUnavailableError
from src.workouts.events import DataChanged

logger = logging.getLogger("workoutsync.store")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS workout_records (
    id               TEXT PRIMARY KEY,
    revision         INTEGER NOT NULL,
    tombstone        INTEGER NOT NULL DEFAULT 0,
    occurred_at      REAL NOT NULL,
    payload          TEXT NOT NULL,
    pushed_revision  INTEGER NOT NULL DEFAULT 0,
    relayed_revision INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_workout_records_occurred_at
    ON workout_records (occurred_at DESC);
"""


class MergeOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"  # stale or identical; local state unchanged
    CONFLICT_RESOLVED = "conflict_resolved"  # equal revision, incoming won the tie-break

    @property
    def applied(self) -> bool:
        return self is not MergeOutcome.REJECTED


def wins_over(incoming: WorkoutRecord, current: WorkoutRecord | None) -> bool:
    """Last-writer-wins: True if ``incoming`` should replace ``current``."""
    if current is None:
        return True
    return incoming.precedence() > current.precedence()


class LocalStore:
    """Durable record store for one device.

    Args:
        path:      sqlite database path, or ``":memory:"``.
        on_change: Called with a ``DataChanged`` after every committed
                   write, merge or reset (outside the critical section).
    """

    def __init__(
        self,
        path: str | Path = ":memory:",
        on_change: Callable[[DataChanged], None] | None = None,
    ) -> None:
        self._path = str(path)
        self._on_change = on_change
        self._lock = threading.Lock()
        self._generation = 0
        try:
            if self._path != ":memory:":
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self._path, check_same_thread=False)
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        except (sqlite3.Error, OSError) as exc:
            raise StoreUnavailableError(f"Cannot open local store {self._path}: {exc}") from exc
        logger.info("Local store opened at %s", self._path)

    @property
    def generation(self) -> int:
        return self._generation

    def set_change_listener(self, on_change: Callable[[DataChanged], None] | None) -> None:
        self._on_change = on_change

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.info("Local store closed")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read(self, record_id: uuid.UUID) -> WorkoutRecord | None:
        with self._lock:
            return self._read(record_id)

    def list_all(self, include_deleted: bool = True) -> list[WorkoutRecord]:
        """Return every record, most recent ``occurred_at`` first."""
        query = "SELECT payload FROM workout_records"
        if not include_deleted:
            query += " WHERE tombstone = 0"
        query += " ORDER BY occurred_at DESC, id"
        with self._lock:
            rows = self._conn.execute(query).fetchall()
        return [WorkoutRecord.model_validate_json(r[0]) for r in rows]

    def pending_push(self) -> list[WorkoutRecord]:
        """Records whose current revision the remote store has not confirmed."""
        return self._pending("pushed_revision")

    def pending_relay(self) -> list[WorkoutRecord]:
        """Records whose current revision the peer device has not received."""
        return self._pending("relayed_revision")

    def _pending(self, column: str) -> list[WorkoutRecord]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT payload FROM workout_records WHERE {column} < revision "
                "ORDER BY occurred_at"
            ).fetchall()
        return [WorkoutRecord.model_validate_json(r[0]) for r in rows]

    def _read(self, record_id: uuid.UUID) -> WorkoutRecord | None:
        row = self._conn.execute(
            "SELECT payload FROM workout_records WHERE id = ?", (str(record_id),)
        ).fetchone()
        return WorkoutRecord.model_validate_json(row[0]) if row else None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def write(self, record: WorkoutRecord) -> int:
        """Commit a local edit and return the revision it was stored under.

        The next revision is assigned here. Writing a record whose id and
        revision match the stored copy with identical content is a no-op.

        Raises:
            LocalStoreError: The write did not commit; prior state is intact.
        """
        with self._lock:
            current = self._read(record.id)
            if (
                current is not None
                and current.revision == record.revision
                and current.same_content(record)
            ):
                return current.revision

            revision = (current.revision if current else 0) + 1
            stored = record.model_copy(update={"revision": revision})
            self._upsert(stored)
            event = self._bump("write", stored.id)

        self._emit(event)
        return revision

    def merge(self, remote: WorkoutRecord) -> MergeOutcome:
        """Apply a record produced elsewhere using last-writer-wins.

        Higher revision wins. Equal revisions resolve by tombstone, then
        origin (Primary over Companion), then content hash. Merging the same
        record twice leaves the store exactly as merging it once.
        """
        with self._lock:
            current = self._read(remote.id)
            if current is not None and current.model_dump() == remote.model_dump():
                return MergeOutcome.REJECTED
            if not wins_over(remote, current):
                logger.debug(
                    "Rejected stale %s rev=%d (have rev=%d)",
                    remote.id, remote.revision, current.revision if current else 0,
                )
                return MergeOutcome.REJECTED

            outcome = (
                MergeOutcome.CONFLICT_RESOLVED
                if current is not None and current.revision == remote.revision
                else MergeOutcome.ACCEPTED
            )
            self._upsert(remote)
            event = self._bump("merge", remote.id)

        if outcome is MergeOutcome.CONFLICT_RESOLVED:
            logger.info(
                "Resolved conflict on %s rev=%d in favour of %s",
                remote.id, remote.revision, remote.origin.value,
            )
        self._emit(event)
        return outcome

    def mark_pushed(self, record_id: uuid.UUID, revision: int) -> None:
        self._mark("pushed_revision", record_id, revision)

    def mark_relayed(self, record_id: uuid.UUID, revision: int) -> None:
        self._mark("relayed_revision", record_id, revision)

    def _mark(self, column: str, record_id: uuid.UUID, revision: int) -> None:
        with self._lock:
            try:
                self._conn.execute(
                    f"UPDATE workout_records SET {column} = MAX({column}, ?) WHERE id = ?",
                    (revision, str(record_id)),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise LocalStoreError(f"Failed to update {column} for {record_id}: {exc}") from exc

    def reset(self) -> None:
        """Drop every record. Only an explicit local-store reset calls this."""
        with self._lock:
            try:
                self._conn.execute("DELETE FROM workout_records")
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise LocalStoreError(f"Failed to reset local store: {exc}") from exc
            event = self._bump("reset", None)
        logger.warning("Local store reset")
        self._emit(event)

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _upsert(self, record: WorkoutRecord) -> None:
        try:
            self._conn.execute(
                """
                INSERT INTO workout_records (id, revision, tombstone, occurred_at, payload)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    revision = excluded.revision,
                    tombstone = excluded.tombstone,
                    occurred_at = excluded.occurred_at,
                    payload = excluded.payload
                """,
                (
                    str(record.id),
                    record.revision,
                    int(record.tombstone),
                    record.occurred_at.timestamp(),
                    record.model_dump_json(),
                ),
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            self._conn.rollback()
            logger.error("Local store write failed for %s: %s", record.id, exc)
            raise LocalStoreError(f"Failed to store {record.id}: {exc}") from exc

    def _bump(self, reason: str, record_id: uuid.UUID | None) -> DataChanged:
        self._generation += 1
        return DataChanged(generation=self._generation, record_id=record_id, reason=reason)

    def _emit(self, event: DataChanged) -> None:
        if self._on_change is not None:
            self._on_change(event)
