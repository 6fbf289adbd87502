"""Local persistence for events, OAuth tokens and sync cursors.

``EventStore`` is the interface the sync engine depends on;
``PostgresEventStore`` implements it on an asyncpg pool against the tables
created by the ``calsync`` alembic chain. The two queries the engine
cannot live without are :meth:`EventStore.load_external_index` (the
pull-phase preload map) and :meth:`EventStore.list_push_candidates` (the
push-phase guard ``source = 'LOCAL' AND external_id IS NULL``).
"""

from __future__ import annotations

import abc
import logging
import uuid
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import Any

import asyncpg

from calsync.errors import EventStoreError
from calsync.models import (
    EventSource,
    EventType,
    LocalEvent,
    SyncCursor,
    SyncStatus,
    TokenRecord,
)

logger = logging.getLogger(__name__)

# Columns a pull-phase update or push-phase stamp may write.
UPDATABLE_EVENT_COLUMNS = frozenset({"title", "start_at", "end_at", "location"})

_EVENT_COLUMNS = (
    "id",
    "owner_id",
    "title",
    "type",
    "start_at",
    "end_at",
    "source",
    "external_id",
    "project_id",
    "location",
    "attendee_ids",
)


class EventStore(abc.ABC):
    """Storage contract used by the token manager, orchestrator and push handler."""

    # -- token records --------------------------------------------------

    @abc.abstractmethod
    async def get_token_record(self, owner_id: str) -> TokenRecord | None: ...

    @abc.abstractmethod
    async def upsert_token_record(self, record: TokenRecord) -> None: ...

    @abc.abstractmethod
    async def save_refreshed_tokens(
        self,
        owner_id: str,
        *,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        """Persist refreshed OAuth material; ``refresh_token`` only when rotated."""

    @abc.abstractmethod
    async def set_sync_status(
        self,
        owner_id: str,
        status: SyncStatus,
        *,
        error: str | None = None,
        last_sync_at: datetime | None = None,
    ) -> None:
        """Write connection health. ``last_sync_at`` is left unchanged when None."""

    # -- cursors ----------------------------------------------------------

    @abc.abstractmethod
    async def get_sync_cursor(self, owner_id: str) -> SyncCursor | None: ...

    @abc.abstractmethod
    async def save_sync_cursor(self, cursor: SyncCursor) -> None:
        """Upsert the cursor. The page token is never persisted."""

    @abc.abstractmethod
    async def delete_connection(self, owner_id: str) -> None:
        """Remove the owner's token record and sync cursor."""

    # -- events -----------------------------------------------------------

    @abc.abstractmethod
    async def load_external_index(self, owner_id: str) -> dict[str, LocalEvent]:
        """Return every event of *owner_id* with a known external id, keyed by it."""

    @abc.abstractmethod
    async def get_event(self, owner_id: str, event_id: uuid.UUID) -> LocalEvent | None: ...

    @abc.abstractmethod
    async def insert_events(self, events: Sequence[LocalEvent]) -> None:
        """Insert all *events* atomically or raise ``EventStoreError``."""

    @abc.abstractmethod
    async def insert_event(self, event: LocalEvent) -> None: ...

    @abc.abstractmethod
    async def update_event_fields(self, event_id: uuid.UUID, fields: Mapping[str, Any]) -> None: ...

    @abc.abstractmethod
    async def delete_events(self, event_ids: Sequence[uuid.UUID]) -> int: ...

    @abc.abstractmethod
    async def list_push_candidates(self, owner_id: str, limit: int) -> list[LocalEvent]: ...

    @abc.abstractmethod
    async def set_external_id(self, event_id: uuid.UUID, external_id: str | None) -> None: ...

    @abc.abstractmethod
    async def release_external_id(self, event_id: uuid.UUID) -> None:
        """Drop the remote link of one event, leaving it LOCAL and pending push."""

    @abc.abstractmethod
    async def delete_remote_events(self, owner_id: str) -> int: ...

    @abc.abstractmethod
    async def detach_remote_events(self, owner_id: str) -> int:
        """Turn REMOTE-sourced events into standalone LOCAL events without an external id."""

    # -- locking ----------------------------------------------------------

    def owner_lock(self, owner_id: str) -> AbstractAsyncContextManager[bool]:
        """Cross-process exclusion for one owner's sync cycle.

        Yields ``True`` when the lock is held. The default implementation has
        no cross-process scope and always succeeds.
        """
        return _always_acquired()


@asynccontextmanager
async def _always_acquired() -> AsyncIterator[bool]:
    yield True


def _check_update_columns(fields: Mapping[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_EVENT_COLUMNS
    if unknown:
        raise ValueError(f"Cannot update event column(s): {', '.join(sorted(unknown))}")


def _row_to_event(row: Mapping[str, Any]) -> LocalEvent:
    attendee_ids = row.get("attendee_ids")
    return LocalEvent(
        id=row["id"],
        owner_id=row["owner_id"],
        title=row["title"],
        type=EventType(row["type"]),
        start_at=row["start_at"],
        end_at=row["end_at"],
        source=EventSource(row["source"]),
        external_id=row.get("external_id"),
        project_id=row.get("project_id"),
        location=row.get("location"),
        attendee_ids=list(attendee_ids) if attendee_ids is not None else None,
    )


def _event_values(event: LocalEvent) -> tuple[Any, ...]:
    return (
        event.id,
        event.owner_id,
        event.title,
        event.type.value,
        event.start_at,
        event.end_at,
        event.source.value,
        event.external_id,
        event.project_id,
        event.location,
        event.attendee_ids,
    )


_INSERT_EVENT_SQL = f"""
    INSERT INTO calendar_events ({", ".join(_EVENT_COLUMNS)})
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
"""

_SELECT_EVENT_SQL = f"SELECT {', '.join(_EVENT_COLUMNS)} FROM calendar_events"


class PostgresEventStore(EventStore):
    """``EventStore`` backed by PostgreSQL through an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    # -- token records --------------------------------------------------

    async def get_token_record(self, owner_id: str) -> TokenRecord | None:
        row = await self._pool.fetchrow(
            """
            SELECT owner_id, access_token, refresh_token, token_type, expires_at, scope,
                   calendar_id, connected_email, sync_status, sync_error, last_sync_at
            FROM calendar_tokens
            WHERE owner_id = $1
            """,
            owner_id,
        )
        if row is None:
            return None
        return TokenRecord(**dict(row))

    async def upsert_token_record(self, record: TokenRecord) -> None:
        await self._pool.execute(
            """
            INSERT INTO calendar_tokens (
                owner_id, access_token, refresh_token, token_type, expires_at, scope,
                calendar_id, connected_email, sync_status, sync_error, last_sync_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT (owner_id) DO UPDATE
                SET access_token = EXCLUDED.access_token,
                    refresh_token = EXCLUDED.refresh_token,
                    token_type = EXCLUDED.token_type,
                    expires_at = EXCLUDED.expires_at,
                    scope = EXCLUDED.scope,
                    calendar_id = EXCLUDED.calendar_id,
                    connected_email = EXCLUDED.connected_email,
                    sync_status = EXCLUDED.sync_status,
                    sync_error = EXCLUDED.sync_error,
                    updated_at = now()
            """,
            record.owner_id,
            record.access_token,
            record.refresh_token,
            record.token_type,
            record.expires_at,
            record.scope,
            record.calendar_id,
            record.connected_email,
            record.sync_status.value,
            record.sync_error,
            record.last_sync_at,
        )

    async def save_refreshed_tokens(
        self,
        owner_id: str,
        *,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        await self._pool.execute(
            """
            UPDATE calendar_tokens
            SET access_token = $2,
                expires_at = $3,
                refresh_token = COALESCE($4, refresh_token),
                updated_at = now()
            WHERE owner_id = $1
            """,
            owner_id,
            access_token,
            expires_at,
            refresh_token,
        )

    async def set_sync_status(
        self,
        owner_id: str,
        status: SyncStatus,
        *,
        error: str | None = None,
        last_sync_at: datetime | None = None,
    ) -> None:
        await self._pool.execute(
            """
            UPDATE calendar_tokens
            SET sync_status = $2,
                sync_error = $3,
                last_sync_at = COALESCE($4, last_sync_at),
                updated_at = now()
            WHERE owner_id = $1
            """,
            owner_id,
            status.value,
            error,
            last_sync_at,
        )

    # -- cursors ----------------------------------------------------------

    async def get_sync_cursor(self, owner_id: str) -> SyncCursor | None:
        row = await self._pool.fetchrow(
            """
            SELECT owner_id, sync_token, full_sync_completed, last_sync_at
            FROM calendar_sync_cursors
            WHERE owner_id = $1
            """,
            owner_id,
        )
        if row is None:
            return None
        return SyncCursor(
            owner_id=row["owner_id"],
            cursor=row["sync_token"],
            full_sync_completed=row["full_sync_completed"],
            last_sync_at=row["last_sync_at"],
        )

    async def save_sync_cursor(self, cursor: SyncCursor) -> None:
        await self._pool.execute(
            """
            INSERT INTO calendar_sync_cursors (
                owner_id, sync_token, page_token, full_sync_completed, last_sync_at
            )
            VALUES ($1, $2, NULL, $3, $4)
            ON CONFLICT (owner_id) DO UPDATE
                SET sync_token = EXCLUDED.sync_token,
                    page_token = NULL,
                    full_sync_completed = EXCLUDED.full_sync_completed,
                    last_sync_at = EXCLUDED.last_sync_at,
                    updated_at = now()
            """,
            cursor.owner_id,
            cursor.cursor,
            cursor.full_sync_completed,
            cursor.last_sync_at,
        )

    async def delete_connection(self, owner_id: str) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM calendar_tokens WHERE owner_id = $1", owner_id)
                await conn.execute(
                    "DELETE FROM calendar_sync_cursors WHERE owner_id = $1", owner_id
                )

    # -- events -----------------------------------------------------------

    async def load_external_index(self, owner_id: str) -> dict[str, LocalEvent]:
        rows = await self._pool.fetch(
            f"{_SELECT_EVENT_SQL} WHERE owner_id = $1 AND external_id IS NOT NULL",
            owner_id,
        )
        index: dict[str, LocalEvent] = {}
        for row in rows:
            event = _row_to_event(row)
            if event.external_id is None:
                continue
            index[event.external_id] = event
        return index

    async def get_event(self, owner_id: str, event_id: uuid.UUID) -> LocalEvent | None:
        row = await self._pool.fetchrow(
            f"{_SELECT_EVENT_SQL} WHERE owner_id = $1 AND id = $2",
            owner_id,
            event_id,
        )
        return _row_to_event(row) if row is not None else None

    async def insert_events(self, events: Sequence[LocalEvent]) -> None:
        if not events:
            return
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(
                        _INSERT_EVENT_SQL, [_event_values(event) for event in events]
                    )
        except asyncpg.PostgresError as exc:
            raise EventStoreError(f"Batch insert of {len(events)} event(s) failed: {exc}") from exc

    async def insert_event(self, event: LocalEvent) -> None:
        try:
            await self._pool.execute(_INSERT_EVENT_SQL, *_event_values(event))
        except asyncpg.PostgresError as exc:
            raise EventStoreError(f"Insert of event {event.id} failed: {exc}") from exc

    async def update_event_fields(self, event_id: uuid.UUID, fields: Mapping[str, Any]) -> None:
        _check_update_columns(fields)
        if not fields:
            return
        columns = sorted(fields)
        assignments = ", ".join(f"{column} = ${index}" for index, column in enumerate(columns, 2))
        await self._pool.execute(
            f"UPDATE calendar_events SET {assignments}, updated_at = now() WHERE id = $1",
            event_id,
            *(fields[column] for column in columns),
        )

    async def delete_events(self, event_ids: Sequence[uuid.UUID]) -> int:
        if not event_ids:
            return 0
        result = await self._pool.execute(
            "DELETE FROM calendar_events WHERE id = ANY($1::uuid[])",
            list(event_ids),
        )
        return _affected_rows(result)

    async def list_push_candidates(self, owner_id: str, limit: int) -> list[LocalEvent]:
        rows = await self._pool.fetch(
            f"""
            {_SELECT_EVENT_SQL}
            WHERE owner_id = $1 AND source = 'LOCAL' AND external_id IS NULL
            ORDER BY start_at
            LIMIT $2
            """,
            owner_id,
            limit,
        )
        return [_row_to_event(row) for row in rows]

    async def set_external_id(self, event_id: uuid.UUID, external_id: str | None) -> None:
        await self._pool.execute(
            "UPDATE calendar_events SET external_id = $2, updated_at = now() WHERE id = $1",
            event_id,
            external_id,
        )

    async def release_external_id(self, event_id: uuid.UUID) -> None:
        try:
            await self._pool.execute(
                """
                UPDATE calendar_events
                SET source = 'LOCAL', external_id = NULL, updated_at = now()
                WHERE id = $1
                """,
                event_id,
            )
        except asyncpg.PostgresError as exc:
            raise EventStoreError(f"Releasing external id of {event_id} failed: {exc}") from exc

    async def delete_remote_events(self, owner_id: str) -> int:
        result = await self._pool.execute(
            "DELETE FROM calendar_events WHERE owner_id = $1 AND source = 'REMOTE'",
            owner_id,
        )
        return _affected_rows(result)

    async def detach_remote_events(self, owner_id: str) -> int:
        result = await self._pool.execute(
            """
            UPDATE calendar_events
            SET source = 'LOCAL', external_id = NULL, updated_at = now()
            WHERE owner_id = $1 AND source = 'REMOTE'
            """,
            owner_id,
        )
        return _affected_rows(result)

    # -- locking ----------------------------------------------------------

    @asynccontextmanager
    async def owner_lock(self, owner_id: str) -> AsyncIterator[bool]:
        """Hold a session-level advisory lock keyed by *owner_id*."""
        async with self._pool.acquire() as conn:
            acquired = await conn.fetchval(
                "SELECT pg_try_advisory_lock(hashtext($1))", f"calsync:{owner_id}"
            )
            try:
                yield bool(acquired)
            finally:
                if acquired:
                    await conn.execute(
                        "SELECT pg_advisory_unlock(hashtext($1))", f"calsync:{owner_id}"
                    )


def _affected_rows(status: str) -> int:
    """Parse the row count out of an asyncpg command status (``DELETE 3``)."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        logger.debug("Unexpected command status: %r", status)
        return 0
