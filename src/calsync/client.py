"""Typed wrapper over the Google Calendar v3 events endpoints.

The client knows about pagination, incremental sync tokens and the
provider's "cursor expired" signal (HTTP 410), which it raises as
:class:`~calsync.errors.CursorInvalidError` so the orchestrator can restart
the listing as a full resync. Rate-limited (429) and transient server
(5xx) responses are retried with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from calsync.config import SyncConfig
from calsync.errors import (
    CalendarRequestError,
    CalendarSyncError,
    CursorInvalidError,
    sanitize_error_message,
)
from calsync.models import EventPage, TokenRecord
from calsync.tokens import TokenCache, TokenSource

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
ALREADY_GONE_STATUS_CODES = frozenset({404, 410})
MAX_RETRY_AFTER_SECONDS = 60.0


class EventsClient(Protocol):
    """The calls the sync engine makes against a remote calendar."""

    async def list_events(
        self, cursor: str | None = None, page_token: str | None = None
    ) -> EventPage: ...

    async def create_event(self, body: dict[str, Any]) -> dict[str, Any]: ...

    async def update_event(self, external_id: str, patch: dict[str, Any]) -> dict[str, Any]: ...

    async def delete_event(self, external_id: str) -> bool: ...


ClientFactory = Callable[[TokenRecord, TokenCache], EventsClient]


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return sanitize_error_message(message)
        if isinstance(error_payload, str) and error_payload.strip():
            return sanitize_error_message(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error_message(raw_text)
    return "Request failed without an error payload"


def _is_success(response: httpx.Response) -> bool:
    return 200 <= response.status_code < 300


class RemoteEventClient:
    """Authenticated list/create/update/delete calls for one calendar."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_source: TokenSource,
        *,
        calendar_id: str,
        config: SyncConfig,
    ) -> None:
        self._http_client = http_client
        self._token_source = token_source
        self._calendar_id = calendar_id
        self._config = config

    @property
    def calendar_id(self) -> str:
        return self._calendar_id

    def _events_path(self, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(self._calendar_id, safe='')}/events"
        if event_id is not None:
            path = f"{path}/{quote(event_id, safe='')}"
        return path

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"

        response = await self._request_once(method, url, params, json_body, force_refresh=False)

        if response.status_code == 401:
            response = await self._request_once(method, url, params, json_body, force_refresh=True)

        retry = 0
        while response.status_code in RETRYABLE_STATUS_CODES and retry < self._config.max_retries:
            backoff = self._config.retry_base_seconds * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = min(float(retry_after_header), MAX_RETRY_AFTER_SECONDS)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API transient failure (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                self._config.max_retries,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(method, url, params, json_body, force_refresh=False)
            retry += 1

        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        *,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._token_source(force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarSyncError(f"Google Calendar request failed: {exc}") from exc

    @staticmethod
    def _json_object(response: httpx.Response, operation: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarSyncError(
                f"Google Calendar {operation} response returned invalid JSON"
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarSyncError(
                f"Google Calendar {operation} response has unexpected payload shape"
            )
        return payload

    # ------------------------------------------------------------------
    # Events API
    # ------------------------------------------------------------------

    async def list_events(
        self,
        cursor: str | None = None,
        page_token: str | None = None,
    ) -> EventPage:
        """Fetch one page of events.

        Without a cursor the request covers ``sync_window_days`` either side
        of now; with a cursor only changes since that cursor are returned.

        Raises:
            CursorInvalidError: When Google returns 410 Gone for the cursor.
        """
        params: dict[str, Any] = {
            "maxResults": self._config.page_size,
            "singleEvents": "true",
        }
        if cursor:
            params["syncToken"] = cursor
        else:
            now = datetime.now(UTC)
            window = timedelta(days=self._config.sync_window_days)
            params["timeMin"] = google_rfc3339(now - window)
            params["timeMax"] = google_rfc3339(now + window)
            params["orderBy"] = "startTime"
        if page_token:
            params["pageToken"] = page_token

        response = await self._request("GET", self._events_path(), params=params)

        if response.status_code == 410:
            raise CursorInvalidError(
                f"Sync cursor expired for calendar '{self._calendar_id}'; full re-sync required"
            )
        if not _is_success(response):
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )

        payload = self._json_object(response, "list")
        raw_items = payload.get("items")
        items: list[dict[str, Any]] = []
        if isinstance(raw_items, list):
            items = [item for item in raw_items if isinstance(item, dict)]

        next_page_token = payload.get("nextPageToken")
        if not isinstance(next_page_token, str) or not next_page_token:
            next_page_token = None
        next_cursor = payload.get("nextSyncToken")
        if isinstance(next_cursor, str) and next_cursor.strip():
            next_cursor = next_cursor.strip()
        else:
            next_cursor = None
        return EventPage(items=items, next_page_token=next_page_token, next_cursor=next_cursor)

    async def create_event(self, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", self._events_path(), json_body=body)
        if not _is_success(response):
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )
        created = self._json_object(response, "create")
        event_id = created.get("id")
        if not isinstance(event_id, str) or not event_id.strip():
            raise CalendarSyncError("Google Calendar create response is missing an event id")
        return created

    async def update_event(self, external_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        normalized = external_id.strip()
        if not normalized:
            raise ValueError("external_id must be a non-empty string")
        response = await self._request("PATCH", self._events_path(normalized), json_body=patch)
        if not _is_success(response):
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )
        return self._json_object(response, "update")

    async def delete_event(self, external_id: str) -> bool:
        """Delete an event.

        404 and 410 mean the event is already gone; both count as success.
        Returns ``False`` in that case and ``True`` when a delete happened.
        """
        normalized = external_id.strip()
        if not normalized:
            raise ValueError("external_id must be a non-empty string")
        response = await self._request("DELETE", self._events_path(normalized))

        if response.status_code in ALREADY_GONE_STATUS_CODES:
            logger.debug(
                "delete_event: event '%s' already gone (status=%d); treating as success",
                normalized,
                response.status_code,
            )
            return False

        if not _is_success(response):
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )
        return True
