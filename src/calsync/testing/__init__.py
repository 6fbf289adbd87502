"""Test support utilities for the calsync package.

Nothing here depends on pytest, so the helpers can also back local dry runs.
"""

from __future__ import annotations

from calsync.testing.fakes import FakeEventsClient
from calsync.testing.memory_store import InMemoryEventStore

__all__ = ["FakeEventsClient", "InMemoryEventStore"]
