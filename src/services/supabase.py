"""Supabase (Postgres) remote durable store for workout records.

Uses ``asyncpg`` directly: a connection pool for upserts and change
queries, plus one dedicated connection that ``LISTEN``s on the change
channel. A trigger ``pg_notify``s the record id on every accepted upsert,
which is all the bridge needs ("something changed, go pull").

Every accepted upsert takes a fresh ``change_seq`` from a sequence; the
bridge's SyncCursor is the highest ``change_seq`` it has merged.
"""

from __future__ import annotations

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Callable

import asyncpg

from src.config import Settings, get_settings
from src.models.workouts import Origin, WorkoutRecord
from src.workouts.bridge import RemoteChange
from src.workouts.errors import TransientError

logger = logging.getLogger("workoutsync.db")

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")

# Errors that mean "the remote store is unreachable right now".
_TRANSIENT_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)

_COLUMNS = [
    "id",
    "occurred_at",
    "duration_seconds",
    "origin",
    "audio_artifact_ref",
    "revision",
    "tombstone",
    "content_hash",
]


def _identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Unsafe SQL identifier: {name!r}")
    return name


def schema_sql(table: str, channel: str) -> str:
    """DDL for the record table, its change sequence and notify trigger."""
    t, ch = _identifier(table), _identifier(channel)
    return f"""
    CREATE SEQUENCE IF NOT EXISTS {t}_change_seq;
    CREATE TABLE IF NOT EXISTS {t} (
        id                 uuid PRIMARY KEY,
        occurred_at        timestamptz NOT NULL,
        duration_seconds   double precision NOT NULL CHECK (duration_seconds >= 0),
        origin             text NOT NULL CHECK (origin IN ('primary', 'companion')),
        audio_artifact_ref text,
        revision           integer NOT NULL CHECK (revision >= 0),
        tombstone          boolean NOT NULL DEFAULT false,
        content_hash       text NOT NULL,
        change_seq         bigint NOT NULL DEFAULT nextval('{t}_change_seq'),
        updated_at         timestamptz NOT NULL DEFAULT NOW()
    );
    CREATE INDEX IF NOT EXISTS idx_{t}_change_seq ON {t} (change_seq);
    CREATE OR REPLACE FUNCTION {t}_notify() RETURNS trigger AS $$
    BEGIN
        PERFORM pg_notify('{ch}', NEW.id::text);
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql;
    DROP TRIGGER IF EXISTS {t}_notify_trg ON {t};
    CREATE TRIGGER {t}_notify_trg AFTER INSERT OR UPDATE ON {t}
        FOR EACH ROW EXECUTE FUNCTION {t}_notify();
    """


def _precedence_sql(alias: str) -> str:
    # Mirrors WorkoutRecord.precedence(): revision, tombstone, origin, content hash.
    return (
        f"({alias}.revision, {alias}.tombstone::int, "
        f"CASE {alias}.origin WHEN 'primary' THEN 1 ELSE 0 END, "
        f'{alias}.content_hash COLLATE "C")'
    )


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
    where: str | None = None,
    returning: str | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Generates idempotent writes; safe to call multiple times with the same
    data. On conflict, updates the non-key columns, but only when ``where``
    holds, so a stale write never replaces a newer row.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).
        where:            Optional condition guarding the update.
        returning:        Optional RETURNING expression.

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(
            f"{col} = EXCLUDED.{col}" for col in update_columns
        )
        update_set += f", change_seq = nextval('{table}_change_seq'), updated_at = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
        if where:
            do_clause += f" WHERE {where}"
    else:
        do_clause = "DO NOTHING"

    query = (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )
    if returning:
        query += f" RETURNING {returning}"
    return query


def row_to_record(row: Any) -> WorkoutRecord:
    return WorkoutRecord(
        id=row["id"],
        occurred_at=row["occurred_at"],
        duration_seconds=row["duration_seconds"],
        origin=Origin(row["origin"]),
        audio_artifact_ref=row["audio_artifact_ref"],
        revision=row["revision"],
        tombstone=row["tombstone"],
    )


class SupabaseRecordStore:
    """Remote record store backed by a Supabase Postgres database.

    The pool is opened lazily: if the database is down at startup, the next
    upsert or fetch tries again, and the change listener is re-established
    once the pool comes back.

    Usage::

        store = SupabaseRecordStore(settings)
        await store.open()
        applied = await store.upsert(record)
        changes = await store.fetch_since(cursor.value)
        await store.close()
    """

    def __init__(self, settings: Settings | None = None) -> None:
        s = settings or get_settings()
        self._dsn = s.supabase_db_url
        self._table = _identifier(s.remote_table)
        self._channel = _identifier(s.remote_change_channel)
        self._pool: asyncpg.Pool | None = None
        self._listener: asyncpg.Connection | None = None
        self._listener_callback: Callable[..., None] | None = None
        self._on_change: Callable[[], None] | None = None
        self._open_lock = asyncio.Lock()
        self._upsert_sql = build_upsert_query(
            self._table,
            _COLUMNS,
            ["id"],
            where=f"{_precedence_sql('EXCLUDED')} > {_precedence_sql(self._table)}",
            returning="change_seq",
        )

    async def open(self) -> None:
        """Create the connection pool and make sure the schema exists.

        Raises:
            TransientError: The database could not be reached.
        """
        async with self._open_lock:
            if self._pool is not None:
                return
            try:
                pool = await asyncpg.create_pool(
                    self._dsn or None,
                    min_size=1,
                    max_size=5,
                    command_timeout=30,
                )
                async with pool.acquire() as conn:
                    await conn.execute(schema_sql(self._table, self._channel))
            except _TRANSIENT_ERRORS as exc:
                raise TransientError(f"Remote store unavailable: {exc}") from exc
            self._pool = pool
            logger.info("Remote store pool initialized (table=%s)", self._table)

        if self._on_change is not None and self._listener is None:
            try:
                await self._listen()
            except TransientError as exc:
                logger.warning("Remote change listener not available: %s", exc)

    async def close(self) -> None:
        """Stop listening and drain the pool."""
        if self._listener is not None:
            try:
                if self._listener_callback is not None:
                    await self._listener.remove_listener(self._channel, self._listener_callback)
                await self._listener.close()
            except _TRANSIENT_ERRORS as exc:
                logger.warning("Error closing remote listener: %s", exc)
            self._listener = None
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("Remote store pool closed")

    @asynccontextmanager
    async def get_connection(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Acquire a pooled connection inside a transaction, opening the pool if needed."""
        if self._pool is None:
            await self.open()
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            async with conn.transaction():
                yield conn

    async def upsert(self, record: WorkoutRecord) -> bool:
        """Write ``record`` unless the stored row already wins.

        Returns:
            True if the row was inserted or replaced.

        Raises:
            TransientError: The remote store could not be reached.
        """
        try:
            async with self.get_connection() as conn:
                seq = await conn.fetchval(
                    self._upsert_sql,
                    record.id,
                    record.occurred_at,
                    record.duration_seconds,
                    record.origin.value,
                    record.audio_artifact_ref,
                    record.revision,
                    record.tombstone,
                    record.content_hash(),
                )
        except _TRANSIENT_ERRORS as exc:
            raise TransientError(f"Upsert of {record.id} failed: {exc}") from exc
        return seq is not None

    async def fetch_since(self, cursor: int, limit: int | None = None) -> list[RemoteChange]:
        """Return every change with ``change_seq > cursor`` in sequence order."""
        query = (
            f"SELECT {', '.join(_COLUMNS)}, change_seq FROM {self._table} "
            "WHERE change_seq > $1 ORDER BY change_seq"
        )
        args: list[Any] = [cursor]
        if limit is not None:
            query += " LIMIT $2"
            args.append(limit)
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch(query, *args)
        except _TRANSIENT_ERRORS as exc:
            raise TransientError(f"Fetch since {cursor} failed: {exc}") from exc
        return [RemoteChange(record=row_to_record(r), change_seq=r["change_seq"]) for r in rows]

    async def subscribe(self, on_change: Callable[[], None]) -> None:
        """LISTEN on the change channel and call ``on_change`` per notification.

        If the database is unreachable the subscription is remembered and
        established on the next successful ``open()``.
        """
        self._on_change = on_change
        await self._listen()

    async def _listen(self) -> None:
        on_change = self._on_change
        if on_change is None:
            return

        def _callback(conn: Any, pid: int, channel: str, payload: str) -> None:
            logger.debug("Remote change notification for %s", payload)
            on_change()

        try:
            self._listener = await asyncpg.connect(self._dsn or None)
            await self._listener.add_listener(self._channel, _callback)
        except _TRANSIENT_ERRORS as exc:
            self._listener = None
            raise TransientError(f"Cannot subscribe to {self._channel}: {exc}") from exc
        self._listener_callback = _callback
        logger.info("Listening for remote changes on %s", self._channel)

    async def ping(self) -> bool:
        try:
            async with self.get_connection() as conn:
                await conn.fetchval("SELECT 1")
        except (TransientError, *_TRANSIENT_ERRORS) as exc:
            logger.warning("Remote store probe failed: %s", exc)
            return False
        return True
