"""Domain models shared by the sync engine, the store and the CLI."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EventType(StrEnum):
    """Local event categories."""

    MEETING = "MEETING"
    TASK = "TASK"
    DEADLINE = "DEADLINE"
    DELIVERY = "DELIVERY"
    TODO = "TODO"
    PT = "PT"
    DELIVERABLE = "DELIVERABLE"
    R_TRAINING = "R_TRAINING"


class EventSource(StrEnum):
    """Which side created an event."""

    LOCAL = "LOCAL"
    REMOTE = "REMOTE"


class SyncStatus(StrEnum):
    """Connection health surfaced to the owning user."""

    CONNECTED = "CONNECTED"
    SYNCING = "SYNCING"
    ERROR = "ERROR"


class LocalEvent(BaseModel):
    """An event row in the locally-owned store."""

    model_config = ConfigDict(extra="forbid")

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    owner_id: str = Field(min_length=1)
    title: str
    type: EventType = EventType.MEETING
    start_at: datetime
    end_at: datetime
    source: EventSource = EventSource.LOCAL
    external_id: str | None = None
    project_id: str | None = None
    location: str | None = None
    attendee_ids: list[str] | None = None

    @model_validator(mode="after")
    def _remote_events_carry_external_id(self) -> LocalEvent:
        if self.source == EventSource.REMOTE and not self.external_id:
            raise ValueError("REMOTE-sourced events require an external_id")
        return self

    @property
    def needs_push(self) -> bool:
        """True when the push phase must create this event remotely."""
        return self.source == EventSource.LOCAL and self.external_id is None


class TokenRecord(BaseModel):
    """OAuth material and connection health for one owner."""

    owner_id: str = Field(min_length=1)
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_at: datetime
    scope: str | None = None
    calendar_id: str = "primary"
    connected_email: str | None = None
    sync_status: SyncStatus = SyncStatus.CONNECTED
    sync_error: str | None = None
    last_sync_at: datetime | None = None

    def has_calendar_scope(self) -> bool:
        return "calendar" in (self.scope or "")


class SyncCursor(BaseModel):
    """Incremental sync position for one owner.

    ``page_token`` only ever holds intra-cycle pagination state; stores
    persist it as ``None``.
    """

    owner_id: str = Field(min_length=1)
    cursor: str | None = None
    page_token: str | None = None
    full_sync_completed: bool = False
    last_sync_at: datetime | None = None


class EventPage(BaseModel):
    """One page of a provider list response."""

    items: list[dict] = Field(default_factory=list)
    next_page_token: str | None = None
    next_cursor: str | None = None


# ---------------------------------------------------------------------------
# Sync outcomes
# ---------------------------------------------------------------------------


class SyncFailureKind(StrEnum):
    NOT_CONNECTED = "not_connected"
    AUTH = "auth"
    PULL = "pull"
    BUSY = "busy"
    INTERNAL = "internal"


@dataclass(frozen=True)
class SyncSucceeded:
    imported: int = 0
    exported: int = 0
    deleted: int = 0
    full_resync: bool = False

    def as_dict(self) -> dict[str, int]:
        return {"imported": self.imported, "exported": self.exported, "deleted": self.deleted}


@dataclass(frozen=True)
class SyncFailed:
    kind: SyncFailureKind
    message: str

    @property
    def reconnect_required(self) -> bool:
        return self.kind == SyncFailureKind.AUTH


@dataclass(frozen=True)
class SyncCancelled:
    """The caller raised the cancel signal before the cycle finished."""

    imported: int = 0
    deleted: int = 0
    cursor_advanced: bool = False


SyncOutcome = SyncSucceeded | SyncFailed | SyncCancelled


# ---------------------------------------------------------------------------
# Single-event push
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreateAction:
    pass


@dataclass(frozen=True)
class UpdateAction:
    pass


@dataclass(frozen=True)
class DeleteAction:
    """Delete the remote copy.

    ``external_id`` is supplied when the local row is already gone.
    """

    external_id: str | None = None


PushAction = CreateAction | UpdateAction | DeleteAction


class PushStatus(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    SKIPPED = "skipped"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass(frozen=True)
class PushOutcome:
    status: PushStatus
    external_id: str | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status not in (PushStatus.FAILED, PushStatus.NOT_FOUND)


def parse_push_action(name: str, *, external_id: str | None = None) -> PushAction:
    """Map a CLI/request action name onto the push-action union."""
    normalized = name.strip().lower()
    if normalized == "create":
        return CreateAction()
    if normalized == "update":
        return UpdateAction()
    if normalized == "delete":
        return DeleteAction(external_id=external_id)
    raise ValueError(f"Unknown push action: {name!r}")
