"""PostgreSQL provisioning and the asyncpg pool behind ``PostgresEventStore``."""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar
from urllib.parse import parse_qs, urlparse

import asyncpg

logger = logging.getLogger(__name__)

DEFAULT_DB_NAME = "calsync"
DEFAULT_DB_USER = "calsync"

_VALID_SSL_MODES = {"disable", "prefer", "allow", "require", "verify-ca", "verify-full"}
_SSL_UPGRADE_CONNECTION_LOST = "unexpected connection_lost() call"

T = TypeVar("T")


def _normalize_ssl_mode(value: str | None) -> str | None:
    """Return a libpq sslmode asyncpg accepts, or None when unset or unknown."""
    if value is None:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    if normalized in _VALID_SSL_MODES:
        return normalized
    logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
    return None


def db_params_from_env() -> dict[str, str | int | None]:
    """Read connection parameters from ``DATABASE_URL`` or ``POSTGRES_*``.

    ``DATABASE_URL`` wins when set; its ``sslmode`` query parameter is honoured.
    """
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        parsed = urlparse(database_url)
        return {
            "host": parsed.hostname or "localhost",
            "port": parsed.port or 5432,
            "user": parsed.username or DEFAULT_DB_USER,
            "password": parsed.password or DEFAULT_DB_USER,
            "database": parsed.path.lstrip("/") or None,
            "ssl": _normalize_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0]),
        }
    env = os.environ
    return {
        "host": env.get("POSTGRES_HOST", "localhost"),
        "port": int(env.get("POSTGRES_PORT", "5432")),
        "user": env.get("POSTGRES_USER", DEFAULT_DB_USER),
        "password": env.get("POSTGRES_PASSWORD", DEFAULT_DB_USER),
        "database": env.get("POSTGRES_DB"),
        "ssl": _normalize_ssl_mode(env.get("POSTGRES_SSLMODE")),
    }


def should_retry_with_ssl_disable(exc: Exception, configured_ssl: str | None) -> bool:
    """True when asyncpg lost the connection during its opportunistic SSL upgrade.

    Only applies when no sslmode was configured explicitly.
    """
    return (
        configured_ssl is None
        and isinstance(exc, ConnectionError)
        and _SSL_UPGRADE_CONNECTION_LOST in str(exc)
    )


class Database:
    """Create the calsync database on demand and own its connection pool."""

    def __init__(
        self,
        db_name: str = DEFAULT_DB_NAME,
        host: str = "localhost",
        port: int = 5432,
        user: str = "postgres",
        password: str = "postgres",
        ssl: str | None = None,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
    ) -> None:
        self.db_name = db_name
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.ssl = ssl
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(cls, db_name: str | None = None) -> Database:
        params = db_params_from_env()
        ssl = params["ssl"]
        return cls(
            db_name=db_name or str(params["database"] or DEFAULT_DB_NAME),
            host=str(params["host"]),
            port=int(params["port"] or 5432),
            user=str(params["user"]),
            password=str(params["password"]),
            ssl=ssl if isinstance(ssl, str) else None,
        )

    @property
    def url(self) -> str:
        """libpq-style URL for alembic."""
        url = f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.db_name}"
        if self.ssl is not None:
            url = f"{url}?sslmode={self.ssl}"
        return url

    def _connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs

    async def _with_ssl_fallback(
        self,
        open_: Callable[..., Awaitable[T]],
        kwargs: dict[str, Any],
        what: str,
    ) -> T:
        try:
            return await open_(**kwargs)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, self.ssl):
                raise
            logger.info("Retrying PostgreSQL %s with ssl=disable after SSL upgrade loss", what)
            return await open_(**{**kwargs, "ssl": "disable"})

    async def provision(self) -> None:
        """Create the database through the ``postgres`` maintenance DB if missing."""
        conn = await self._with_ssl_fallback(
            asyncpg.connect, self._connect_kwargs("postgres"), "provision connection"
        )
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1", self.db_name
            )
            if exists:
                logger.info("Database already exists: %s", self.db_name)
                return
            # CREATE DATABASE takes no bind parameters
            quoted = self.db_name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{quoted}" TEMPLATE template0')
            logger.info("Created database: %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        """Open the connection pool and return it."""
        kwargs = {
            **self._connect_kwargs(self.db_name),
            "min_size": self.min_pool_size,
            "max_size": self.max_pool_size,
        }
        self.pool = await self._with_ssl_fallback(asyncpg.create_pool, kwargs, "pool creation")
        logger.info("Connection pool created for: %s", self.db_name)
        return self.pool

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            logger.info("Connection pool closed for: %s", self.db_name)
