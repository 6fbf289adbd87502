"""Connect and disconnect an owner's Google Calendar account."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from calsync.config import SyncConfig
from calsync.core.logging import owner_context
from calsync.errors import TokenRefreshError
from calsync.models import SyncCursor, SyncStatus, TokenRecord
from calsync.store import EventStore
from calsync.tokens import TokenManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DisconnectResult:
    revoked: bool
    deleted_events: int = 0
    detached_events: int = 0


async def connect_account(
    config: SyncConfig,
    store: EventStore,
    http_client: httpx.AsyncClient,
    owner_id: str,
    code: str,
    *,
    redirect_uri: str | None = None,
    calendar_id: str | None = None,
    token_manager: TokenManager | None = None,
) -> TokenRecord:
    """Exchange an OAuth authorization code and store the owner's connection.

    Writes a fresh ``CONNECTED`` token record and an empty sync cursor so the
    next cycle performs a windowed full sync.

    Raises:
        TokenRefreshError: When the code exchange fails.
        CalendarCredentialError: When the OAuth client is not configured.
    """
    tokens = token_manager or TokenManager(config, store, http_client)
    with owner_context(owner_id):
        grant = await tokens.exchange_code(code, redirect_uri)
        if grant.refresh_token is None:
            raise TokenRefreshError("Google OAuth code exchange did not return a refresh_token")
        email = await tokens.fetch_account_email(grant.access_token)

        record = TokenRecord(
            owner_id=owner_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            token_type=grant.token_type,
            expires_at=grant.expires_at,
            scope=grant.scope,
            calendar_id=calendar_id or config.default_calendar_id,
            connected_email=email,
            sync_status=SyncStatus.CONNECTED,
        )
        await store.upsert_token_record(record)
        await store.save_sync_cursor(SyncCursor(owner_id=owner_id))
        logger.info("Connected Google Calendar for owner %s (%s)", owner_id, email or "unknown")
        return record


async def disconnect_account(
    config: SyncConfig,
    store: EventStore,
    http_client: httpx.AsyncClient,
    owner_id: str,
    *,
    delete_remote_events: bool = False,
    token_manager: TokenManager | None = None,
) -> DisconnectResult:
    """Revoke the owner's grant and remove the connection.

    Revocation is best effort. REMOTE-sourced local events are either
    deleted or detached into standalone LOCAL events, per
    ``delete_remote_events``.
    """
    tokens = token_manager or TokenManager(config, store, http_client)
    with owner_context(owner_id):
        record = await store.get_token_record(owner_id)
        revoked = False
        if record is not None:
            revoked = await tokens.revoke(record.refresh_token or record.access_token)

        await store.delete_connection(owner_id)

        if delete_remote_events:
            deleted = await store.delete_remote_events(owner_id)
            logger.info("Disconnected owner %s; deleted %d imported event(s)", owner_id, deleted)
            return DisconnectResult(revoked=revoked, deleted_events=deleted)

        detached = await store.detach_remote_events(owner_id)
        logger.info("Disconnected owner %s; kept %d imported event(s)", owner_id, detached)
        return DisconnectResult(revoked=revoked, detached_events=detached)
