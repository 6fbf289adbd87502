"""Unit tests for the two-phase sync cycle.

Covers:
- pull classification: insert / update / delete against the preload index
- cursor persistence only after a completed page sequence
- CursorInvalid restart as a full resync (including mid-pagination)
- batch insert fallback to row-by-row inserts
- push phase: batch cap, no duplicate creation, per-item failures
- failure outcomes: not connected, token refresh, pull errors, busy owner
- cancel signal between pages and task cancellation
- per-owner single flight
- one token refresh per cycle across pages and pushes
- unexpected errors reported as failed outcomes
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from calsync.errors import CalendarRequestError, CursorInvalidError
from calsync.models import (
    EventPage,
    EventSource,
    SyncCancelled,
    SyncCursor,
    SyncFailed,
    SyncFailureKind,
    SyncStatus,
    SyncSucceeded,
)
from calsync.orchestrator import RECONNECT_REQUIRED_MESSAGE, SyncOrchestrator
from calsync.testing import FakeEventsClient, InMemoryEventStore
from calsync.testing.factories import (
    DEFAULT_OWNER_ID as OWNER,
    cancelled_google_event,
    google_event,
    make_local_event,
    make_token_record,
)

pytestmark = pytest.mark.unit


def _no_network(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request: {request.method} {request.url}")


def _orchestrator(sync_config, store, client, handler=_no_network) -> SyncOrchestrator:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SyncOrchestrator(
        sync_config,
        store,
        http_client,
        client_factory=lambda record, cache: client,
    )


async def _connect(store: InMemoryEventStore, cursor: str | None = None, **record_kwargs):
    await store.upsert_token_record(make_token_record(**record_kwargs))
    await store.save_sync_cursor(SyncCursor(owner_id=OWNER, cursor=cursor))


def _remote_event(external_id: str, title: str = "Imported"):
    return make_local_event(title, source=EventSource.REMOTE, external_id=external_id)


# ============================================================================
# Pull phase
# ============================================================================


class TestPull:
    async def test_new_cancelled_and_pending_scenario(self, sync_config, store):
        await _connect(store, cursor="cursor-1")
        gone = store.add_event(_remote_event("evt-gone"))
        client = FakeEventsClient(
            [
                EventPage(
                    items=[
                        google_event("evt-a", summary="A"),
                        google_event("evt-b", summary="B"),
                        cancelled_google_event("evt-gone"),
                    ],
                    next_cursor="cursor-2",
                )
            ]
        )

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert outcome == SyncSucceeded(imported=2, exported=0, deleted=1)
        assert outcome.as_dict() == {"imported": 2, "exported": 0, "deleted": 1}
        assert gone.id not in store.events
        assert {e.external_id for e in store.events_for(OWNER)} == {"evt-a", "evt-b"}
        cursor = store.cursors[OWNER]
        assert cursor.cursor == "cursor-2"
        assert cursor.full_sync_completed is True
        assert cursor.page_token is None
        assert client.list_calls == [("cursor-1", None)]

    async def test_status_moves_through_syncing_to_connected(self, sync_config, store):
        await _connect(store, sync_status=SyncStatus.ERROR, sync_error="old failure")
        client = FakeEventsClient([EventPage(next_cursor="c")])

        await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert store.status_history == [(OWNER, SyncStatus.SYNCING), (OWNER, SyncStatus.CONNECTED)]
        record = store.tokens[OWNER]
        assert record.sync_status == SyncStatus.CONNECTED
        assert record.sync_error is None
        assert record.last_sync_at is not None

    async def test_known_event_is_updated_in_place(self, sync_config, store):
        await _connect(store, cursor="c1")
        existing = store.add_event(_remote_event("evt-1", title="Old title"))
        client = FakeEventsClient(
            [
                EventPage(
                    items=[
                        google_event(
                            "evt-1",
                            summary="New title",
                            start="2026-03-05T09:00:00Z",
                            end="2026-03-05T09:30:00Z",
                            location="Room 2",
                        )
                    ],
                    next_cursor="c2",
                )
            ]
        )

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert outcome == SyncSucceeded(imported=0, exported=0, deleted=0)
        updated = store.events[existing.id]
        assert updated.title == "New title"
        assert updated.location == "Room 2"
        assert updated.start_at == datetime(2026, 3, 5, 9, 0, tzinfo=UTC)
        assert updated.source == EventSource.REMOTE

    async def test_cancelled_unknown_event_is_ignored(self, sync_config, store):
        await _connect(store, cursor="c1")
        client = FakeEventsClient(
            [EventPage(items=[cancelled_google_event("evt-never-seen")], next_cursor="c2")]
        )

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert outcome == SyncSucceeded()
        assert store.events == {}

    async def test_pages_are_followed_and_last_cursor_kept(self, sync_config, store):
        await _connect(store, cursor="c1")
        client = FakeEventsClient(
            [
                EventPage(items=[google_event("evt-1")], next_page_token="p2"),
                EventPage(items=[google_event("evt-2")], next_cursor="c2"),
            ]
        )

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert outcome.imported == 2
        assert client.list_calls == [("c1", None), ("c1", "p2")]
        assert store.cursors[OWNER].cursor == "c2"

    async def test_first_sync_without_cursor_lists_window(self, sync_config, store):
        await store.upsert_token_record(make_token_record())
        client = FakeEventsClient([EventPage(items=[google_event("evt-1")], next_cursor="c1")])

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert outcome.imported == 1
        assert client.list_calls == [(None, None)]
        assert store.cursors[OWNER].cursor == "c1"

    async def test_rerunning_same_listing_converges(self, sync_config, store):
        await _connect(store)
        items = [google_event("evt-1", summary="One"), google_event("evt-2", summary="Two")]
        client = FakeEventsClient([EventPage(items=items), EventPage(items=items)])
        orchestrator = _orchestrator(sync_config, store, client)

        first = await orchestrator.run_sync(OWNER)
        snapshot = {e.external_id: e.title for e in store.events_for(OWNER)}
        second = await orchestrator.run_sync(OWNER)

        assert first.imported == 2
        assert second == SyncSucceeded(imported=0, exported=0, deleted=0)
        assert {e.external_id: e.title for e in store.events_for(OWNER)} == snapshot
        assert len(client.list_calls) == 2

    async def test_update_failure_is_logged_and_cycle_succeeds(self, sync_config, store):
        await _connect(store, cursor="c1")
        existing = store.add_event(_remote_event("evt-1", title="Old"))
        store.failing_update_ids.add(existing.id)
        client = FakeEventsClient(
            [EventPage(items=[google_event("evt-1", summary="New")], next_cursor="c2")]
        )

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert isinstance(outcome, SyncSucceeded)
        assert store.events[existing.id].title == "Old"
        assert store.cursors[OWNER].cursor == "c2"

    async def test_batch_insert_failure_falls_back_per_row(self, sync_config, store):
        await _connect(store, cursor="c1")
        store.failing_external_ids.add("evt-2")
        client = FakeEventsClient(
            [
                EventPage(
                    items=[google_event("evt-1"), google_event("evt-2"), google_event("evt-3")],
                    next_cursor="c2",
                )
            ]
        )

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert outcome.imported == 2
        assert {e.external_id for e in store.events_for(OWNER)} == {"evt-1", "evt-3"}

    async def test_pushed_local_event_is_not_reimported(self, sync_config, store):
        await _connect(store, cursor="c1")
        local = store.add_event(make_local_event("Written locally", external_id="remote-9"))
        client = FakeEventsClient(
            [
                EventPage(
                    items=[google_event("remote-9", summary="Written locally")],
                    next_cursor="c2",
                )
            ]
        )

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert outcome.imported == 0
        assert [e.id for e in store.events_for(OWNER)] == [local.id]
        assert store.events[local.id].source == EventSource.LOCAL


# ============================================================================
# Cursor invalidation
# ============================================================================


class TestCursorInvalid:
    async def test_invalid_cursor_restarts_as_full_resync(self, sync_config, store):
        await _connect(store, cursor="stale")
        client = FakeEventsClient(
            [
                CursorInvalidError("gone"),
                EventPage(items=[google_event("evt-1")], next_cursor="fresh"),
            ]
        )

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert outcome == SyncSucceeded(imported=1, full_resync=True)
        assert client.list_calls == [("stale", None), (None, None)]
        assert store.cursors[OWNER].cursor == "fresh"

    async def test_mid_pagination_restart_does_not_double_count(self, sync_config, store):
        await _connect(store, cursor="stale")
        client = FakeEventsClient(
            [
                EventPage(items=[google_event("evt-1")], next_page_token="p2"),
                CursorInvalidError("gone"),
                EventPage(
                    items=[google_event("evt-1"), google_event("evt-2")],
                    next_cursor="fresh",
                ),
            ]
        )

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert outcome == SyncSucceeded(imported=2, full_resync=True)
        assert client.list_calls == [("stale", None), ("stale", "p2"), (None, None)]
        assert len(store.events_for(OWNER)) == 2

    async def test_invalid_without_cursor_fails_pull(self, sync_config, store):
        await store.upsert_token_record(make_token_record())
        client = FakeEventsClient([CursorInvalidError("gone")])

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert isinstance(outcome, SyncFailed)
        assert outcome.kind == SyncFailureKind.PULL
        assert OWNER not in store.cursors


# ============================================================================
# Push phase
# ============================================================================


class TestPush:
    async def test_push_is_capped_per_cycle(self, sync_config, store):
        await _connect(store, cursor="c1")
        base = datetime(2026, 4, 1, 9, 0, tzinfo=UTC)
        for index in range(12):
            start_at = base + timedelta(days=index)
            store.add_event(make_local_event(f"Local {index}", start_at=start_at))
        client = FakeEventsClient()
        orchestrator = _orchestrator(sync_config, store, client)

        first = await orchestrator.run_sync(OWNER)
        second = await orchestrator.run_sync(OWNER)

        assert first.exported == 10
        assert second.exported == 2
        assert len(client.created) == 12
        assert all(e.external_id for e in store.events_for(OWNER))

    async def test_pushed_event_is_never_created_twice(self, sync_config, store):
        await _connect(store, cursor="c1")
        event = store.add_event(make_local_event("Once"))
        client = FakeEventsClient()
        orchestrator = _orchestrator(sync_config, store, client)

        await orchestrator.run_sync(OWNER)
        client.pages.append(EventPage(items=[google_event("remote-1", summary="Once")]))
        second = await orchestrator.run_sync(OWNER)

        assert second == SyncSucceeded()
        assert len(client.created) == 1
        assert store.events[event.id].external_id == "remote-1"
        assert len(store.events_for(OWNER)) == 1

    async def test_push_failure_leaves_event_pending(self, sync_config, store):
        await _connect(store, cursor="c1")
        broken = store.add_event(make_local_event("Broken"))
        store.add_event(make_local_event("Fine", start_at=datetime(2026, 5, 1, tzinfo=UTC)))
        client = FakeEventsClient()
        client.fail_create_for.add("Broken")

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert outcome.exported == 1
        assert store.events[broken.id].external_id is None
        assert store.tokens[OWNER].sync_status == SyncStatus.CONNECTED

    async def test_exported_event_is_stamped_with_remote_id(self, sync_config, store):
        await _connect(store, cursor="c1")
        event = store.add_event(make_local_event("Standalone"))
        client = FakeEventsClient()

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert outcome.exported == 1
        assert store.events[event.id].external_id == "remote-1"

    async def test_remote_sourced_events_are_never_pushed(self, sync_config, store):
        await _connect(store, cursor="c1")
        store.add_event(_remote_event("evt-1"))
        client = FakeEventsClient()

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert outcome.exported == 0
        assert client.created == []


# ============================================================================
# Failure outcomes
# ============================================================================


class TestFailures:
    async def test_not_connected(self, sync_config, store):
        client = FakeEventsClient()

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert isinstance(outcome, SyncFailed)
        assert outcome.kind == SyncFailureKind.NOT_CONNECTED
        assert store.status_history == []
        assert client.list_calls == []

    async def test_token_refresh_failure_requires_reconnect(self, sync_config, store):
        await _connect(store, cursor="c1", expires_in=timedelta(minutes=-1))
        client = FakeEventsClient()

        def _token_endpoint(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant"})

        outcome = await _orchestrator(sync_config, store, client, _token_endpoint).run_sync(OWNER)

        assert isinstance(outcome, SyncFailed)
        assert outcome.kind == SyncFailureKind.AUTH
        assert outcome.reconnect_required
        assert outcome.message == RECONNECT_REQUIRED_MESSAGE
        record = store.tokens[OWNER]
        assert record.sync_status == SyncStatus.ERROR
        assert "invalid_grant" in (record.sync_error or "")
        assert record.access_token == "access-token-1"
        assert client.list_calls == []

    async def test_pull_error_marks_error_and_skips_push(self, sync_config, store):
        await _connect(store, cursor="c1")
        pending = store.add_event(make_local_event("Pending"))
        client = FakeEventsClient([CalendarRequestError(status_code=500, message="backendError")])

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert isinstance(outcome, SyncFailed)
        assert outcome.kind == SyncFailureKind.PULL
        assert "backendError" in outcome.message
        assert store.tokens[OWNER].sync_status == SyncStatus.ERROR
        assert store.cursors[OWNER].cursor == "c1"
        assert client.created == []
        assert store.events[pending.id].external_id is None

    async def test_error_on_later_page_keeps_old_cursor(self, sync_config, store):
        await _connect(store, cursor="c1")
        client = FakeEventsClient(
            [
                EventPage(items=[google_event("evt-1")], next_page_token="p2"),
                CalendarRequestError(status_code=503, message="unavailable"),
            ]
        )

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert isinstance(outcome, SyncFailed)
        assert store.cursors[OWNER].cursor == "c1"
        assert store.find_by_external_id(OWNER, "evt-1") is not None

    async def test_busy_owner_is_skipped(self, sync_config, store):
        await _connect(store, cursor="c1")
        store.busy_owners.add(OWNER)
        client = FakeEventsClient()

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER)

        assert isinstance(outcome, SyncFailed)
        assert outcome.kind == SyncFailureKind.BUSY
        assert store.status_history == []
        assert client.list_calls == []

    async def test_unexpected_store_error_becomes_failed_outcome(self, sync_config, store):
        await _connect(store, cursor="c1", expires_in=timedelta(minutes=-1))
        store.save_refreshed_tokens = AsyncMock(side_effect=OSError("connection reset by peer"))
        client = FakeEventsClient()

        def _token_endpoint(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"access_token": "fresh-token", "expires_in": 3600})

        outcome = await _orchestrator(sync_config, store, client, _token_endpoint).run_sync(OWNER)

        assert isinstance(outcome, SyncFailed)
        assert outcome.kind == SyncFailureKind.INTERNAL
        assert "connection reset by peer" in outcome.message
        record = store.tokens[OWNER]
        assert record.sync_status == SyncStatus.ERROR
        assert record.sync_error == outcome.message
        assert client.list_calls == []

    async def test_client_factory_error_does_not_leave_syncing(self, sync_config, store):
        await _connect(store, cursor="c1")

        def _broken_factory(record, cache):
            raise RuntimeError("calendar client unavailable")

        orchestrator = SyncOrchestrator(
            sync_config, store, httpx.AsyncClient(), client_factory=_broken_factory
        )

        outcome = await orchestrator.run_sync(OWNER)

        assert isinstance(outcome, SyncFailed)
        assert outcome.kind == SyncFailureKind.INTERNAL
        assert store.tokens[OWNER].sync_status == SyncStatus.ERROR


# ============================================================================
# Token refresh
# ============================================================================


class _GoogleApi:
    """Token endpoint plus a two-page listing and event creation."""

    def __init__(self) -> None:
        self.token_posts = 0
        self.bearers: list[str] = []
        self._created = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            self.token_posts += 1
            return httpx.Response(200, json={"access_token": "fresh-token", "expires_in": 3600})
        self.bearers.append(request.headers["Authorization"])
        if request.method == "POST":
            self._created += 1
            return httpx.Response(200, json={"id": f"g-new-{self._created}"})
        if request.url.params.get("pageToken") == "p2":
            return httpx.Response(
                200, json={"items": [google_event("evt-2")], "nextSyncToken": "c2"}
            )
        return httpx.Response(200, json={"items": [google_event("evt-1")], "nextPageToken": "p2"})


class TestTokenRefresh:
    async def test_expiring_token_refreshed_once_per_cycle(self, sync_config, store):
        await _connect(store, cursor="c1", expires_in=timedelta(minutes=2))
        store.add_event(make_local_event("Pending 1"))
        store.add_event(make_local_event("Pending 2"))
        api = _GoogleApi()
        orchestrator = SyncOrchestrator(
            sync_config, store, httpx.AsyncClient(transport=httpx.MockTransport(api))
        )

        outcome = await orchestrator.run_sync(OWNER)

        assert outcome == SyncSucceeded(imported=2, exported=2, deleted=0)
        assert api.token_posts == 1
        assert len(api.bearers) == 4
        assert set(api.bearers) == {"Bearer fresh-token"}
        assert store.tokens[OWNER].access_token == "fresh-token"
        assert store.cursors[OWNER].cursor == "c2"

    async def test_valid_token_is_not_refreshed(self, sync_config, store):
        await _connect(store, cursor="c1", expires_in=timedelta(hours=1))
        api = _GoogleApi()
        orchestrator = SyncOrchestrator(
            sync_config, store, httpx.AsyncClient(transport=httpx.MockTransport(api))
        )

        await orchestrator.run_sync(OWNER)

        assert api.token_posts == 0
        assert set(api.bearers) == {"Bearer access-token-1"}


# ============================================================================
# Cancellation and concurrency
# ============================================================================


class _CancelAfterListing(FakeEventsClient):
    def __init__(self, pages, cancel: asyncio.Event, *, after_calls: int) -> None:
        super().__init__(pages)
        self.cancel = cancel
        self.after_calls = after_calls

    async def list_events(self, cursor=None, page_token=None):
        page = await super().list_events(cursor, page_token)
        if len(self.list_calls) >= self.after_calls:
            self.cancel.set()
        return page


class _BlockingClient(FakeEventsClient):
    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def list_events(self, cursor=None, page_token=None):
        self.list_calls.append((cursor, page_token))
        self.started.set()
        await self.release.wait()
        return EventPage(next_cursor="c2")


class TestCancellation:
    async def test_cancel_between_pages_keeps_cursor(self, sync_config, store):
        await _connect(store, cursor="c1")
        store.add_event(make_local_event("Pending"))
        cancel = asyncio.Event()
        client = _CancelAfterListing(
            [
                EventPage(items=[google_event("evt-1")], next_page_token="p2"),
                EventPage(items=[google_event("evt-2")], next_cursor="c2"),
            ],
            cancel,
            after_calls=1,
        )

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER, cancel=cancel)

        assert outcome == SyncCancelled(imported=1, deleted=0, cursor_advanced=False)
        assert store.cursors[OWNER].cursor == "c1"
        assert store.find_by_external_id(OWNER, "evt-1") is not None
        assert client.created == []
        assert store.tokens[OWNER].sync_status == SyncStatus.CONNECTED

    async def test_cancel_after_last_page_skips_push(self, sync_config, store):
        await _connect(store, cursor="c1")
        store.add_event(make_local_event("Pending"))
        cancel = asyncio.Event()
        client = _CancelAfterListing(
            [EventPage(items=[google_event("evt-1")], next_cursor="c2")],
            cancel,
            after_calls=1,
        )

        outcome = await _orchestrator(sync_config, store, client).run_sync(OWNER, cancel=cancel)

        assert outcome == SyncCancelled(imported=1, deleted=0, cursor_advanced=True)
        assert store.cursors[OWNER].cursor == "c2"
        assert client.created == []

    async def test_task_cancellation_restores_status(self, sync_config, store):
        await _connect(store, cursor="c1")
        client = _BlockingClient()
        task = asyncio.create_task(_orchestrator(sync_config, store, client).run_sync(OWNER))
        await client.started.wait()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert store.tokens[OWNER].sync_status == SyncStatus.CONNECTED
        assert store.cursors[OWNER].cursor == "c1"

    async def test_concurrent_runs_share_one_cycle(self, sync_config, store):
        await _connect(store, cursor="c1")
        client = _BlockingClient()
        orchestrator = _orchestrator(sync_config, store, client)

        first = asyncio.create_task(orchestrator.run_sync(OWNER))
        await client.started.wait()
        second = asyncio.create_task(orchestrator.run_sync(OWNER))
        await asyncio.sleep(0)
        client.release.set()

        outcomes = await asyncio.gather(first, second)

        assert outcomes[0] is outcomes[1]
        assert len(client.list_calls) == 1
        assert store.status_history.count((OWNER, SyncStatus.SYNCING)) == 1

    async def test_sequential_runs_each_execute(self, sync_config, store):
        await _connect(store, cursor="c1")
        client = FakeEventsClient()
        orchestrator = _orchestrator(sync_config, store, client)

        await orchestrator.run_sync(OWNER)
        await orchestrator.run_sync(OWNER)

        assert len(client.list_calls) == 2
