"""Root conftest: PostgreSQL testcontainer fixtures for integration tests.

Unit tests never touch these. Integration tests request
``provisioned_postgres_pool`` and get a freshly created database per use.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """One Postgres container shared by every DB-backed test in the session."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as postgres:
        yield postgres


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Factory for a migrated, uniquely named database and its asyncpg pool.

    Usage::

        async with provisioned_postgres_pool() as pool:
            ...
    """
    from calsync.db import Database
    from calsync.migrations import run_migrations

    @asynccontextmanager
    async def _provision(
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 3,
        migrate: bool = True,
    ) -> AsyncIterator[Pool]:
        db = Database(
            db_name=f"test_{uuid.uuid4().hex[:12]}",
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        if migrate:
            await run_migrations(db.url)
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision
