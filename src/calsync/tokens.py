"""OAuth access/refresh-token lifecycle for calendar owners.

``TokenManager.ensure_valid_token`` is the single entry point used by the
sync orchestrator and the single-event push handler. Tokens within the
refresh margin (five minutes by default) are refreshed against Google's
token endpoint; refreshed material is persisted through the event store
before it is returned. A failed refresh records ``SyncStatus.ERROR`` on the
owner's token record and re-raises, leaving the stored tokens untouched.

Callers pass a :class:`TokenCache` scoped to one invocation so that every
provider call in a cycle reuses the same refreshed token without any
process-wide state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx

from calsync.config import SyncConfig
from calsync.errors import TokenRefreshError, sanitize_error_message
from calsync.models import SyncStatus, TokenRecord

if TYPE_CHECKING:
    from calsync.store import EventStore

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

DEFAULT_EXPIRES_IN_SECONDS = 3600

TokenSource = Callable[..., Awaitable[str]]


@dataclass
class _CachedToken:
    access_token: str
    expires_at: datetime


@dataclass
class TokenCache:
    """Per-invocation access-token cache keyed by owner id.

    Entries are considered valid until ``margin`` before their expiry.
    """

    margin: timedelta = timedelta(minutes=5)
    _entries: dict[str, _CachedToken] = field(default_factory=dict)

    def get(self, owner_id: str, *, now: datetime | None = None) -> str | None:
        entry = self._entries.get(owner_id)
        if entry is None:
            return None
        current = now or datetime.now(UTC)
        if entry.expires_at - current < self.margin:
            self._entries.pop(owner_id, None)
            return None
        return entry.access_token

    def put(self, owner_id: str, access_token: str, expires_at: datetime) -> None:
        self._entries[owner_id] = _CachedToken(access_token=access_token, expires_at=expires_at)

    def invalidate(self, owner_id: str) -> None:
        self._entries.pop(owner_id, None)


@dataclass(frozen=True)
class TokenGrant:
    """Parsed response of the OAuth token endpoint."""

    access_token: str
    expires_at: datetime
    refresh_token: str | None = None
    scope: str | None = None
    token_type: str = "Bearer"


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def _safe_oauth_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        description = payload.get("error_description")
        error = payload.get("error")
        parts = [p for p in (error, description) if isinstance(p, str) and p.strip()]
        if parts:
            return sanitize_error_message(": ".join(parts))

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error_message(raw_text)
    return "Request failed without an error payload"


class TokenManager:
    """Refreshes, exchanges and revokes Google OAuth tokens for owners."""

    def __init__(
        self,
        config: SyncConfig,
        store: EventStore,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._config = config
        self._store = store
        self._http_client = http_client
        self._margin = timedelta(seconds=config.refresh_margin_seconds)
        self._locks: dict[str, asyncio.Lock] = {}

    def new_cache(self) -> TokenCache:
        return TokenCache(margin=self._margin)

    def needs_refresh(self, record: TokenRecord, *, now: datetime | None = None) -> bool:
        current = now or datetime.now(UTC)
        return record.expires_at - current < self._margin

    async def ensure_valid_token(
        self,
        record: TokenRecord,
        cache: TokenCache | None = None,
        *,
        force_refresh: bool = False,
    ) -> str:
        """Return a usable access token for ``record.owner_id``.

        Refreshes when the stored token is within the refresh margin (or when
        ``force_refresh`` is set). On refresh failure the record is marked
        ``ERROR`` and :class:`TokenRefreshError` propagates.
        """
        owner_id = record.owner_id
        if cache is not None and not force_refresh:
            cached = cache.get(owner_id)
            if cached is not None:
                return cached

        if not force_refresh and not self.needs_refresh(record):
            if cache is not None:
                cache.put(owner_id, record.access_token, record.expires_at)
            return record.access_token

        lock = self._locks.setdefault(owner_id, asyncio.Lock())
        async with lock:
            if cache is not None and not force_refresh:
                cached = cache.get(owner_id)
                if cached is not None:
                    return cached
            return await self._refresh(record, cache)

    def token_source(self, record: TokenRecord, cache: TokenCache) -> TokenSource:
        """Bind *record* and *cache* into a callable usable by the remote client."""

        async def _source(*, force_refresh: bool = False) -> str:
            return await self.ensure_valid_token(record, cache, force_refresh=force_refresh)

        return _source

    async def _refresh(self, record: TokenRecord, cache: TokenCache | None) -> str:
        owner_id = record.owner_id
        try:
            grant = await self._request_grant(
                {"refresh_token": record.refresh_token, "grant_type": "refresh_token"}
            )
        except TokenRefreshError as exc:
            message = sanitize_error_message(exc)
            logger.warning("Token refresh failed for owner %s: %s", owner_id, message)
            await self._store.set_sync_status(owner_id, SyncStatus.ERROR, error=message)
            record.sync_status = SyncStatus.ERROR
            record.sync_error = message
            if cache is not None:
                cache.invalidate(owner_id)
            raise

        await self._store.save_refreshed_tokens(
            owner_id,
            access_token=grant.access_token,
            expires_at=grant.expires_at,
            refresh_token=grant.refresh_token,
        )
        record.access_token = grant.access_token
        record.expires_at = grant.expires_at
        if grant.refresh_token:
            record.refresh_token = grant.refresh_token
        if cache is not None:
            cache.put(owner_id, grant.access_token, grant.expires_at)
        logger.info(
            "Refreshed access token for owner %s (expires_at=%s)",
            owner_id,
            grant.expires_at.isoformat(),
        )
        return grant.access_token

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> TokenGrant:
        """Exchange an OAuth authorization code for an access/refresh token pair."""
        grant = await self._request_grant(
            {
                "code": code,
                "redirect_uri": redirect_uri or self._config.redirect_uri,
                "grant_type": "authorization_code",
            }
        )
        if not grant.refresh_token:
            raise TokenRefreshError(
                "Google OAuth code exchange did not return a refresh_token; "
                "request offline access with prompt=consent"
            )
        return grant

    async def fetch_account_email(self, access_token: str) -> str | None:
        try:
            response = await self._http_client.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Userinfo request failed: %s", exc)
            return None
        if response.status_code != 200:
            logger.warning("Userinfo request returned status %d", response.status_code)
            return None
        try:
            payload = response.json()
        except ValueError:
            return None
        email = payload.get("email") if isinstance(payload, dict) else None
        return email.strip() if isinstance(email, str) and email.strip() else None

    async def revoke(self, token: str) -> bool:
        """Revoke *token* at Google. Best effort: returns False instead of raising."""
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_REVOKE_URL,
                params={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Token revocation request failed (non-fatal): %s", exc)
            return False
        if response.status_code >= 300:
            logger.warning(
                "Token revocation returned status %d (non-fatal)", response.status_code
            )
            return False
        return True

    async def _request_grant(self, form: dict[str, str]) -> TokenGrant:
        client_id, client_secret = self._config.require_client_credentials()
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={**form, "client_id": client_id, "client_secret": client_secret},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshError(f"Google OAuth token request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise TokenRefreshError(
                "Google OAuth token request failed "
                f"({response.status_code}): {_safe_oauth_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError("Google OAuth token endpoint returned invalid JSON") from exc

        if not isinstance(payload, dict):
            raise TokenRefreshError("Google OAuth token endpoint returned an unexpected payload")

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        refresh_token = payload.get("refresh_token")
        scope = payload.get("scope")
        token_type = payload.get("token_type")
        return TokenGrant(
            access_token=access_token.strip(),
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
            refresh_token=refresh_token.strip()
            if isinstance(refresh_token, str) and refresh_token.strip()
            else None,
            scope=scope if isinstance(scope, str) else None,
            token_type=token_type if isinstance(token_type, str) and token_type else "Bearer",
        )
