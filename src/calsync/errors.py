"""Error taxonomy for the calendar sync engine.

Callers distinguish three families:

- ``TokenRefreshError``: the OAuth refresh failed; a sync cannot proceed
  and the owner must reconnect.
- ``CursorInvalidError``: the provider rejected the incremental cursor
  (HTTP 410); recoverable by restarting the listing as a full resync.
- ``CalendarRequestError``: any other non-2xx provider response.
"""

from __future__ import annotations

import re


class CalendarSyncError(RuntimeError):
    """Base error raised by the calendar sync engine."""


class CalendarCredentialError(CalendarSyncError):
    """Raised when OAuth client credentials are missing or invalid."""


class TokenRefreshError(CalendarSyncError):
    """Raised when refresh-token or authorization-code exchange fails."""


class CalendarRequestError(CalendarSyncError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class CursorInvalidError(CalendarSyncError):
    """Raised when a sync cursor is expired or invalid; caller should do a full sync."""


class EventStoreError(CalendarSyncError):
    """Raised by event store implementations when a write cannot be applied."""


_REDACTION_PATTERNS = (
    # key=value style pairs
    (
        re.compile(
            r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)"
        ),
        r"\1=[REDACTED]",
    ),
    # JSON/Python dict style quoted values
    (
        re.compile(
            r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?"""
            r"""\s*:\s*)(['"]).*?\2"""
        ),
        r'\1"[REDACTED]"',
    ),
    # Authorization headers
    (re.compile(r"(?i)\bBearer\s+[A-Za-z0-9._\-~+/]+=*"), "Bearer [REDACTED]"),
)


def redact_credentials(message: str) -> str:
    """Redact token-like values from *message*."""
    redacted = message
    for pattern, replacement in _REDACTION_PATTERNS:
        redacted = pattern.sub(replacement, redacted)
    return redacted


def sanitize_error_message(exc: BaseException | str, *, limit: int = 200) -> str:
    """Render *exc* as a short, credential-free message suitable for persistence."""
    raw = exc if isinstance(exc, str) else str(exc) or type(exc).__name__
    return " ".join(redact_credentials(raw).split())[:limit]
