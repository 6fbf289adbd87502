"""CLI for calsync: run sync cycles and single-event pushes for an owner."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import assert_never

import click
import httpx

from calsync.config import ConfigError, SyncConfig, load_config
from calsync.connection import connect_account, disconnect_account
from calsync.core.logging import configure_logging
from calsync.db import Database
from calsync.errors import CalendarSyncError
from calsync.migrations import run_migrations
from calsync.models import (
    PushStatus,
    SyncCancelled,
    SyncFailed,
    SyncOutcome,
    SyncSucceeded,
    parse_push_action,
)
from calsync.orchestrator import SyncOrchestrator
from calsync.push import SinglePushHandler
from calsync.store import PostgresEventStore


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="calsync.toml file or a directory containing one (default: environment)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calsync: keep a local event store in sync with Google Calendar."""
    try:
        config = load_config(config_path) if config_path else SyncConfig.from_env()
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
    )
    ctx.obj = config


@asynccontextmanager
async def _services(
    config: SyncConfig,
) -> AsyncIterator[tuple[PostgresEventStore, httpx.AsyncClient]]:
    db = Database.from_env()
    pool = await db.connect()
    try:
        async with httpx.AsyncClient(timeout=config.http_timeout_seconds) as http_client:
            yield PostgresEventStore(pool), http_client
    finally:
        await db.close()


@cli.command()
@click.option("--owner", "owner_id", required=True, help="Owner whose calendar to sync")
@click.pass_obj
def sync(config: SyncConfig, owner_id: str) -> None:
    """Run one full pull-then-push sync cycle."""
    outcome = asyncio.run(_sync(config, owner_id))
    if isinstance(outcome, SyncSucceeded):
        click.echo(json.dumps(outcome.as_dict()))
    elif isinstance(outcome, SyncCancelled):
        click.echo(
            f"Sync cancelled (imported={outcome.imported}, deleted={outcome.deleted}, "
            f"cursor_advanced={outcome.cursor_advanced})"
        )
        sys.exit(2)
    elif isinstance(outcome, SyncFailed):
        click.echo(f"Sync failed ({outcome.kind}): {outcome.message}", err=True)
        sys.exit(1)
    else:
        assert_never(outcome)


async def _sync(config: SyncConfig, owner_id: str) -> SyncOutcome:
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGTERM, cancel.set)
    try:
        async with _services(config) as (store, http_client):
            orchestrator = SyncOrchestrator(config, store, http_client)
            return await orchestrator.run_sync(owner_id, cancel=cancel)
    finally:
        loop.remove_signal_handler(signal.SIGTERM)


@cli.command()
@click.option("--owner", "owner_id", required=True, help="Owner of the event")
@click.option("--event", "event_id", default=None, help="Local event id (UUID)")
@click.option(
    "--action",
    type=click.Choice(["create", "update", "delete"], case_sensitive=False),
    required=True,
)
@click.option("--external-id", default=None, help="Remote event id, for deletes of removed rows")
@click.pass_obj
def push(
    config: SyncConfig,
    owner_id: str,
    event_id: str | None,
    action: str,
    external_id: str | None,
) -> None:
    """Push one local event change to Google Calendar."""
    try:
        parsed_event_id = uuid.UUID(event_id) if event_id else None
    except ValueError:
        click.echo(f"Invalid event id: {event_id}", err=True)
        sys.exit(1)
    if parsed_event_id is None and not (action.lower() == "delete" and external_id):
        click.echo("--event is required unless deleting by --external-id", err=True)
        sys.exit(1)

    push_action = parse_push_action(action, external_id=external_id)

    async def _push():
        async with _services(config) as (store, http_client):
            handler = SinglePushHandler(config, store, http_client)
            return await handler.push_single_event(owner_id, parsed_event_id, push_action)

    outcome = asyncio.run(_push())
    line = f"{outcome.status}"
    if outcome.external_id:
        line += f" external_id={outcome.external_id}"
    if outcome.reason:
        line += f" ({outcome.reason})"
    click.echo(line)
    if outcome.status in (PushStatus.FAILED, PushStatus.NOT_FOUND):
        sys.exit(1)


@cli.command()
@click.option("--owner", "owner_id", required=True)
@click.option("--code", required=True, help="OAuth authorization code from the consent redirect")
@click.option("--redirect-uri", default=None, help="Redirect URI used for the consent request")
@click.option("--calendar-id", default=None, help="Calendar to sync (default: primary)")
@click.pass_obj
def connect(
    config: SyncConfig,
    owner_id: str,
    code: str,
    redirect_uri: str | None,
    calendar_id: str | None,
) -> None:
    """Exchange an OAuth code and store the owner's Google Calendar connection."""

    async def _connect():
        async with _services(config) as (store, http_client):
            return await connect_account(
                config,
                store,
                http_client,
                owner_id,
                code,
                redirect_uri=redirect_uri,
                calendar_id=calendar_id,
            )

    try:
        record = asyncio.run(_connect())
    except CalendarSyncError as exc:
        click.echo(f"Connect failed: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Connected {record.connected_email or owner_id} ({record.calendar_id})")


@cli.command()
@click.option("--owner", "owner_id", required=True)
@click.option(
    "--delete-events/--keep-events",
    default=False,
    help="Delete imported events instead of keeping them as local events",
)
@click.pass_obj
def disconnect(config: SyncConfig, owner_id: str, delete_events: bool) -> None:
    """Revoke access and remove the owner's Google Calendar connection."""

    async def _disconnect():
        async with _services(config) as (store, http_client):
            return await disconnect_account(
                config, store, http_client, owner_id, delete_remote_events=delete_events
            )

    result = asyncio.run(_disconnect())
    click.echo(
        f"Disconnected (revoked={result.revoked}, deleted={result.deleted_events}, "
        f"kept={result.detached_events})"
    )


@cli.command()
def migrate() -> None:
    """Create the database if needed and apply schema migrations."""

    async def _migrate() -> None:
        db = Database.from_env()
        await db.provision()
        await run_migrations(db.url)

    asyncio.run(_migrate())
    click.echo("Migrations applied")


def main() -> None:
    """Entry point for the ``calsync`` console script."""
    cli()
