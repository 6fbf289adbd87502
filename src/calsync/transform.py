"""Bidirectional mapping between local events and Google Calendar payloads.

All-day events use an exclusive end date on the Google side
(``start.date = D``, ``end.date = D+1`` for a single day). Locally they are
stored as an inclusive span pinned to the deployment timezone:
``D 00:00:00`` to ``D 23:59:59``. ``local_to_remote`` recognises such spans
and converts them back to exclusive dates so a round trip is lossless.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from calsync.config import DEFAULT_TIMEZONE
from calsync.models import EventSource, EventType, LocalEvent

UNTITLED_EVENT_TITLE = "(No title)"
ALL_DAY_END_TIME = time(23, 59, 59)


def parse_google_datetime(value: str) -> datetime:
    """Parse an RFC 3339 timestamp as returned by Google (``Z`` suffix allowed)."""
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        return datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid datetime value: {value}") from exc


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _boundary(payload: Any, key: str) -> str | None:
    if not isinstance(payload, dict):
        return None
    return _optional_text(payload.get(key))


def is_cancelled(remote: dict[str, Any]) -> bool:
    status = remote.get("status")
    return isinstance(status, str) and status.strip().lower() == "cancelled"


class EventTransformer:
    """Stateless converter between ``LocalEvent`` rows and Google event resources."""

    def __init__(self, timezone: str = DEFAULT_TIMEZONE) -> None:
        self.timezone = timezone
        self._zone = ZoneInfo(timezone)

    # ------------------------------------------------------------------
    # Remote -> local
    # ------------------------------------------------------------------

    def remote_to_local(self, remote: dict[str, Any], owner_id: str) -> LocalEvent | None:
        """Map a Google event resource onto a new REMOTE-sourced ``LocalEvent``.

        Returns ``None`` for cancelled events and for events lacking a usable
        start or end.
        """
        if is_cancelled(remote):
            return None

        external_id = _optional_text(remote.get("id"))
        if external_id is None:
            return None

        bounds = self.remote_bounds(remote)
        if bounds is None:
            return None
        start_at, end_at = bounds

        return LocalEvent(
            owner_id=owner_id,
            title=_optional_text(remote.get("summary")) or UNTITLED_EVENT_TITLE,
            type=EventType.MEETING,
            start_at=start_at,
            end_at=end_at,
            source=EventSource.REMOTE,
            external_id=external_id,
            location=_optional_text(remote.get("location")),
        )

    def remote_bounds(self, remote: dict[str, Any]) -> tuple[datetime, datetime] | None:
        start_payload = remote.get("start")
        end_payload = remote.get("end")

        start_date_time = _boundary(start_payload, "dateTime")
        start_date = _boundary(start_payload, "date")

        if start_date_time is None and start_date is not None:
            end_date = _boundary(end_payload, "date")
            if end_date is None:
                return None
            try:
                first_day = date.fromisoformat(start_date)
                exclusive_end = date.fromisoformat(end_date)
            except ValueError:
                return None
            last_day = max(exclusive_end - timedelta(days=1), first_day)
            return (
                datetime.combine(first_day, time(0, 0, 0), tzinfo=self._zone),
                datetime.combine(last_day, ALL_DAY_END_TIME, tzinfo=self._zone),
            )

        end_date_time = _boundary(end_payload, "dateTime")
        if start_date_time is None or end_date_time is None:
            return None
        try:
            start_at = parse_google_datetime(start_date_time)
            end_at = parse_google_datetime(end_date_time)
        except ValueError:
            return None
        return self._ensure_aware(start_at, start_payload), self._ensure_aware(end_at, end_payload)

    def _ensure_aware(self, value: datetime, payload: Any) -> datetime:
        if value.tzinfo is not None:
            return value
        zone_name = _boundary(payload, "timeZone")
        try:
            zone = ZoneInfo(zone_name) if zone_name else self._zone
        except (ValueError, KeyError):
            zone = self._zone
        return value.replace(tzinfo=zone)

    # ------------------------------------------------------------------
    # Local -> remote
    # ------------------------------------------------------------------

    def local_to_remote(self, local: LocalEvent) -> dict[str, Any]:
        """Build the Google event body for *local*.

        ``location`` is omitted entirely when absent.
        """
        body: dict[str, Any] = {"summary": local.title}
        start_at = self._to_zone(local.start_at)
        end_at = self._to_zone(local.end_at)

        if self.is_all_day_span(start_at, end_at):
            body["start"] = {"date": start_at.date().isoformat(), "timeZone": self.timezone}
            body["end"] = {
                "date": (end_at.date() + timedelta(days=1)).isoformat(),
                "timeZone": self.timezone,
            }
        else:
            body["start"] = {"dateTime": start_at.isoformat(), "timeZone": self.timezone}
            body["end"] = {"dateTime": end_at.isoformat(), "timeZone": self.timezone}

        if local.location:
            body["location"] = local.location
        return body

    def _to_zone(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=self._zone)
        return value.astimezone(self._zone)

    @staticmethod
    def is_all_day_span(start_at: datetime, end_at: datetime) -> bool:
        """True for inclusive whole-day spans (``00:00:00`` .. ``23:59:59``)."""
        return (
            start_at.time().replace(microsecond=0) == time(0, 0, 0)
            and end_at.time().replace(microsecond=0) == ALL_DAY_END_TIME
            and end_at.date() >= start_at.date()
        )

    @staticmethod
    def mutable_fields(local: LocalEvent) -> dict[str, Any]:
        """Fields a pull-phase update is allowed to overwrite."""
        return {
            "title": local.title,
            "start_at": local.start_at,
            "end_at": local.end_at,
            "location": local.location,
        }
