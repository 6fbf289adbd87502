"""Shared fixtures for the calsync unit tests."""

from __future__ import annotations

import pytest

from calsync.config import SyncConfig
from calsync.testing import FakeEventsClient, InMemoryEventStore


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(
        client_id="test-client-id",
        client_secret="test-client-secret",
        redirect_uri="https://app.example.com/oauth/callback",
        retry_base_seconds=0,
    )


@pytest.fixture
def store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def fake_client() -> FakeEventsClient:
    return FakeEventsClient()
