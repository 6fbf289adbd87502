"""Two-phase sync cycle for one owner.

Phase 1 (pull) applies remote changes to the local store page by page,
keyed by a preloaded ``external_id -> LocalEvent`` index so re-listing never
inserts duplicates. Phase 2 (push) creates a bounded batch of local-only
events on the remote side. The cursor is only advanced after the whole
page sequence of Phase 1 has been applied.

``run_sync`` never raises for expected failures; it returns one of
``SyncSucceeded``, ``SyncFailed`` or ``SyncCancelled``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx

from calsync.client import ClientFactory, EventsClient, RemoteEventClient
from calsync.config import SyncConfig
from calsync.core.logging import owner_context
from calsync.errors import (
    CalendarSyncError,
    CursorInvalidError,
    EventStoreError,
    sanitize_error_message,
)
from calsync.locking import OwnerSingleFlight
from calsync.models import (
    LocalEvent,
    SyncCancelled,
    SyncCursor,
    SyncFailed,
    SyncFailureKind,
    SyncOutcome,
    SyncStatus,
    SyncSucceeded,
    TokenRecord,
)
from calsync.store import EventStore
from calsync.tokens import TokenCache, TokenManager
from calsync.transform import EventTransformer, is_cancelled

logger = logging.getLogger(__name__)

RECONNECT_REQUIRED_MESSAGE = "Token refresh failed. Please reconnect Google Calendar."
NOT_CONNECTED_MESSAGE = "Google Calendar not connected"


@dataclass
class _PullStats:
    imported: int = 0
    deleted: int = 0
    update_failures: int = 0
    full_resync: bool = False
    completed: bool = False


class SyncOrchestrator:
    """Drive full pull-then-push sync cycles, one owner at a time."""

    def __init__(
        self,
        config: SyncConfig,
        store: EventStore,
        http_client: httpx.AsyncClient,
        *,
        token_manager: TokenManager | None = None,
        transformer: EventTransformer | None = None,
        client_factory: ClientFactory | None = None,
        single_flight: OwnerSingleFlight[SyncOutcome] | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._http_client = http_client
        self._tokens = token_manager or TokenManager(config, store, http_client)
        self._transformer = transformer or EventTransformer(config.timezone)
        self._client_factory = client_factory or self._default_client
        self._single_flight = single_flight or OwnerSingleFlight()

    def _default_client(self, record: TokenRecord, cache: TokenCache) -> EventsClient:
        return RemoteEventClient(
            self._http_client,
            self._tokens.token_source(record, cache),
            calendar_id=record.calendar_id or self._config.default_calendar_id,
            config=self._config,
        )

    async def run_sync(
        self,
        owner_id: str,
        *,
        cancel: asyncio.Event | None = None,
    ) -> SyncOutcome:
        """Run one full sync cycle for *owner_id*.

        Concurrent calls for the same owner join the cycle already in flight.
        """
        return await self._single_flight.run(owner_id, lambda: self._run_locked(owner_id, cancel))

    async def _run_locked(self, owner_id: str, cancel: asyncio.Event | None) -> SyncOutcome:
        with owner_context(owner_id):
            async with self._store.owner_lock(owner_id) as acquired:
                if not acquired:
                    logger.warning("Another process is syncing owner %s; skipping", owner_id)
                    return SyncFailed(
                        kind=SyncFailureKind.BUSY,
                        message="A sync for this account is already running",
                    )
                return await self._run_cycle(owner_id, cancel)

    async def _run_cycle(self, owner_id: str, cancel: asyncio.Event | None) -> SyncOutcome:
        record: TokenRecord | None = None
        try:
            record = await self._store.get_token_record(owner_id)
            if record is None:
                return SyncFailed(
                    kind=SyncFailureKind.NOT_CONNECTED, message=NOT_CONNECTED_MESSAGE
                )
            await self._store.set_sync_status(owner_id, SyncStatus.SYNCING)
            return await self._run_phases(record, cancel)
        except asyncio.CancelledError:
            if record is not None:
                logger.warning("Sync for owner %s was interrupted; restoring status", owner_id)
                await asyncio.shield(self._store.set_sync_status(owner_id, SyncStatus.CONNECTED))
            raise
        except Exception as exc:
            message = f"Sync failed: {sanitize_error_message(exc)}"
            logger.error("Sync for owner %s failed: %s", owner_id, message, exc_info=True)
            try:
                await self._store.set_sync_status(owner_id, SyncStatus.ERROR, error=message)
            except Exception:
                logger.exception("Could not record sync failure for owner %s", owner_id)
            return SyncFailed(kind=SyncFailureKind.INTERNAL, message=message)

    async def _run_phases(self, record: TokenRecord, cancel: asyncio.Event | None) -> SyncOutcome:
        owner_id = record.owner_id
        cache = self._tokens.new_cache()
        try:
            await self._tokens.ensure_valid_token(record, cache)
        except CalendarSyncError as exc:
            message = f"Token refresh failed: {sanitize_error_message(exc)}"
            logger.error("Sync aborted for owner %s: %s", owner_id, message)
            await self._store.set_sync_status(owner_id, SyncStatus.ERROR, error=message)
            return SyncFailed(kind=SyncFailureKind.AUTH, message=RECONNECT_REQUIRED_MESSAGE)

        client = self._client_factory(record, cache)

        # Phase 1: pull remote -> local
        try:
            stats = await self._pull(owner_id, client, cancel)
        except Exception as exc:
            message = f"Pull failed: {sanitize_error_message(exc)}"
            logger.error("Phase 1 (pull) failed for owner %s: %s", owner_id, message, exc_info=True)
            await self._store.set_sync_status(owner_id, SyncStatus.ERROR, error=message)
            return SyncFailed(kind=SyncFailureKind.PULL, message=message)

        if _is_set(cancel):
            logger.info(
                "Sync for owner %s cancelled after pull (completed=%s)", owner_id, stats.completed
            )
            await self._store.set_sync_status(owner_id, SyncStatus.CONNECTED)
            return SyncCancelled(
                imported=stats.imported,
                deleted=stats.deleted,
                cursor_advanced=stats.completed,
            )

        # Phase 2: push local-only events -> remote
        exported = await self._push(owner_id, client)

        now = datetime.now(UTC)
        await self._store.set_sync_status(owner_id, SyncStatus.CONNECTED, last_sync_at=now)
        logger.info(
            "Calendar sync completed (owner=%s, imported=%d, exported=%d, deleted=%d, "
            "full_resync=%s, update_failures=%d)",
            owner_id,
            stats.imported,
            exported,
            stats.deleted,
            stats.full_resync,
            stats.update_failures,
        )
        return SyncSucceeded(
            imported=stats.imported,
            exported=exported,
            deleted=stats.deleted,
            full_resync=stats.full_resync,
        )

    # ------------------------------------------------------------------
    # Phase 1
    # ------------------------------------------------------------------

    async def _pull(
        self,
        owner_id: str,
        client: EventsClient,
        cancel: asyncio.Event | None,
    ) -> _PullStats:
        stored_cursor = await self._store.get_sync_cursor(owner_id)
        cursor = stored_cursor.cursor if stored_cursor is not None else None
        index = await self._store.load_external_index(owner_id)

        stats = _PullStats()
        page_token: str | None = None
        latest_cursor: str | None = None

        while True:
            if _is_set(cancel):
                logger.info("Pull for owner %s cancelled between pages", owner_id)
                return stats

            try:
                page = await client.list_events(cursor, page_token)
            except CursorInvalidError:
                if cursor is None:
                    raise
                logger.warning("Sync cursor invalid for owner %s; running a full re-sync", owner_id)
                cursor = None
                page_token = None
                latest_cursor = None
                stats.full_resync = True
                continue

            await self._apply_page(owner_id, page.items, index, stats)

            if page.next_cursor:
                latest_cursor = page.next_cursor
            page_token = page.next_page_token
            if not page_token:
                break

        if latest_cursor is None:
            logger.warning("Provider returned no next cursor for owner %s", owner_id)
        await self._store.save_sync_cursor(
            SyncCursor(
                owner_id=owner_id,
                cursor=latest_cursor or cursor,
                full_sync_completed=True,
                last_sync_at=datetime.now(UTC),
            )
        )
        stats.completed = True
        return stats

    async def _apply_page(
        self,
        owner_id: str,
        items: list[dict[str, Any]],
        index: dict[str, LocalEvent],
        stats: _PullStats,
    ) -> None:
        to_delete: list[LocalEvent] = []
        to_insert: list[LocalEvent] = []
        to_update: list[tuple[uuid.UUID, dict[str, Any]]] = []

        for item in items:
            raw_id = item.get("id")
            if not isinstance(raw_id, str) or not raw_id.strip():
                continue
            external_id = raw_id.strip()
            known = index.get(external_id)

            if is_cancelled(item):
                if known is not None:
                    to_delete.append(known)
                    del index[external_id]
                continue

            incoming = self._transformer.remote_to_local(item, owner_id)
            if incoming is None:
                logger.debug("Skipping remote event %s without usable start/end", external_id)
                continue

            if known is None:
                to_insert.append(incoming)
                index[external_id] = incoming
                continue

            fields = self._transformer.mutable_fields(incoming)
            if any(getattr(known, name) != value for name, value in fields.items()):
                to_update.append((known.id, fields))
                index[external_id] = known.model_copy(update=fields)

        if to_delete:
            await self._store.delete_events([event.id for event in to_delete])
            stats.deleted += len(to_delete)

        if to_insert:
            stats.imported += len(to_insert)
            try:
                await self._store.insert_events(to_insert)
            except EventStoreError as exc:
                logger.error("Batch insert error, retrying row by row: %s", exc)
                for event in to_insert:
                    try:
                        await self._store.insert_event(event)
                    except EventStoreError as row_exc:
                        logger.error(
                            "Insert failed for remote event %s: %s", event.external_id, row_exc
                        )
                        stats.imported -= 1
                        if event.external_id and index.get(event.external_id) is event:
                            del index[event.external_id]

        if to_update:
            results = await asyncio.gather(
                *(
                    self._store.update_event_fields(event_id, fields)
                    for event_id, fields in to_update
                ),
                return_exceptions=True,
            )
            for (event_id, _), result in zip(to_update, results, strict=True):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException):
                    stats.update_failures += 1
                    logger.error("Update failed for local event %s: %s", event_id, result)

    # ------------------------------------------------------------------
    # Phase 2
    # ------------------------------------------------------------------

    async def _push(self, owner_id: str, client: EventsClient) -> int:
        try:
            candidates = await self._store.list_push_candidates(
                owner_id, self._config.push_batch_size
            )
        except Exception as exc:
            logger.error("Phase 2 (push) could not load candidates for owner %s: %s", owner_id, exc)
            return 0

        if not candidates:
            return 0

        results = await asyncio.gather(*(self._push_one(client, event) for event in candidates))
        return sum(1 for pushed in results if pushed)

    async def _push_one(self, client: EventsClient, event: LocalEvent) -> bool:
        try:
            created = await client.create_event(self._transformer.local_to_remote(event))
        except Exception as exc:
            logger.error("Failed to export event %s (%s): %s", event.id, event.title, exc)
            return False

        external_id = str(created["id"])
        try:
            await self._store.set_external_id(event.id, external_id)
        except Exception as exc:
            logger.error(
                "Exported event %s as %s but could not record the external id: %s",
                event.id,
                external_id,
                exc,
            )
            return False
        return True


def _is_set(cancel: asyncio.Event | None) -> bool:
    return cancel is not None and cancel.is_set()
