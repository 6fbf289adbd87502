"""Push a single local event change to Google Calendar.

Triggered right after a local create/update/delete so the remote calendar
does not wait for the next full sync cycle. Every path returns a
:class:`PushOutcome`; provider and store failures are logged, never raised.
"""

from __future__ import annotations

import logging
import uuid
from typing import assert_never

import httpx

from calsync.client import ClientFactory, EventsClient, RemoteEventClient
from calsync.config import SyncConfig
from calsync.core.logging import owner_context
from calsync.errors import CalendarSyncError, sanitize_error_message
from calsync.models import (
    CreateAction,
    DeleteAction,
    LocalEvent,
    PushAction,
    PushOutcome,
    PushStatus,
    TokenRecord,
    UpdateAction,
)
from calsync.store import EventStore
from calsync.tokens import TokenCache, TokenManager
from calsync.transform import EventTransformer

logger = logging.getLogger(__name__)


class SinglePushHandler:
    """Apply one create, update or delete to the owner's remote calendar."""

    def __init__(
        self,
        config: SyncConfig,
        store: EventStore,
        http_client: httpx.AsyncClient,
        *,
        token_manager: TokenManager | None = None,
        transformer: EventTransformer | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._http_client = http_client
        self._tokens = token_manager or TokenManager(config, store, http_client)
        self._transformer = transformer or EventTransformer(config.timezone)
        self._client_factory = client_factory or self._default_client

    def _default_client(self, record: TokenRecord, cache: TokenCache) -> EventsClient:
        return RemoteEventClient(
            self._http_client,
            self._tokens.token_source(record, cache),
            calendar_id=record.calendar_id or self._config.default_calendar_id,
            config=self._config,
        )

    async def push_single_event(
        self,
        owner_id: str,
        event_id: uuid.UUID | None,
        action: PushAction,
    ) -> PushOutcome:
        """Push *event_id* for *owner_id* according to *action*.

        ``event_id`` may be ``None`` only for a :class:`DeleteAction` that
        carries the remote id itself.
        """
        with owner_context(owner_id):
            record = await self._store.get_token_record(owner_id)
            if record is None:
                return PushOutcome(PushStatus.SKIPPED, reason="Google Calendar not connected")
            if not record.has_calendar_scope():
                return PushOutcome(PushStatus.SKIPPED, reason="Calendar scope not granted")

            cache = self._tokens.new_cache()
            try:
                await self._tokens.ensure_valid_token(record, cache)
            except CalendarSyncError as exc:
                reason = f"Token refresh failed: {sanitize_error_message(exc)}"
                logger.error("Push aborted for owner %s: %s", owner_id, reason)
                return PushOutcome(PushStatus.FAILED, reason=reason)

            client = self._client_factory(record, cache)
            event = await self._store.get_event(owner_id, event_id) if event_id else None

            if isinstance(action, CreateAction):
                if event is None:
                    return _not_found(event_id)
                return await self._create(client, event)
            elif isinstance(action, UpdateAction):
                if event is None:
                    return _not_found(event_id)
                return await self._update(client, event)
            elif isinstance(action, DeleteAction):
                return await self._delete(client, event, action.external_id)
            else:
                assert_never(action)

    async def _create(self, client: EventsClient, event: LocalEvent) -> PushOutcome:
        if event.external_id:
            return PushOutcome(
                PushStatus.SKIPPED,
                external_id=event.external_id,
                reason="Event already exists on Google Calendar",
            )
        try:
            created = await client.create_event(self._transformer.local_to_remote(event))
            external_id = str(created["id"])
            await self._store.set_external_id(event.id, external_id)
        except Exception as exc:
            reason = sanitize_error_message(exc)
            logger.error("Create push failed for event %s: %s", event.id, reason)
            return PushOutcome(PushStatus.FAILED, reason=reason)

        logger.info("Pushed event %s to Google Calendar as %s", event.id, external_id)
        return PushOutcome(PushStatus.CREATED, external_id=external_id)

    async def _update(self, client: EventsClient, event: LocalEvent) -> PushOutcome:
        if not event.external_id:
            return await self._create(client, event)
        try:
            await client.update_event(event.external_id, self._transformer.local_to_remote(event))
        except Exception as exc:
            reason = sanitize_error_message(exc)
            logger.warning(
                "Update push failed for event %s (%s); clearing external id: %s",
                event.id,
                event.external_id,
                reason,
            )
            try:
                await self._store.release_external_id(event.id)
            except Exception as clear_exc:
                logger.error("Could not clear external id of event %s: %s", event.id, clear_exc)
            return PushOutcome(PushStatus.FAILED, reason=reason)
        return PushOutcome(PushStatus.UPDATED, external_id=event.external_id)

    async def _delete(
        self,
        client: EventsClient,
        event: LocalEvent | None,
        external_id: str | None,
    ) -> PushOutcome:
        target = external_id or (event.external_id if event is not None else None)
        if not target:
            if event is None and external_id is None:
                return PushOutcome(PushStatus.NOT_FOUND, reason="Nothing to delete")
            return PushOutcome(PushStatus.SKIPPED, reason="Event has no Google Calendar copy")
        try:
            deleted = await client.delete_event(target)
        except Exception as exc:
            reason = sanitize_error_message(exc)
            logger.error("Delete push failed for remote event %s: %s", target, reason)
            return PushOutcome(PushStatus.FAILED, external_id=target, reason=reason)
        if not deleted:
            logger.info("Remote event %s was already gone", target)
        return PushOutcome(PushStatus.DELETED, external_id=target)


def _not_found(event_id: uuid.UUID | None) -> PushOutcome:
    return PushOutcome(PushStatus.NOT_FOUND, reason=f"Event {event_id} not found")
