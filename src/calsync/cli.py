"""CLI for calsync: serve the API, migrate the schema, run sync passes."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import click
import httpx

from calsync.config import CalsyncConfig, ConfigError, load_config
from calsync.core.logging import configure_logging
from calsync.core.metrics import init_metrics
from calsync.core.telemetry import init_telemetry
from calsync.db import Database
from calsync.migrations import run_migrations
from calsync.sync.engine import CalendarSyncEngine, build_engine
from calsync.sync.models import SyncResult
from calsync.sync.store import PostgresSyncStore

logger = logging.getLogger(__name__)

SERVICE_NAME = "calsync"


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to calsync.toml (defaults to $CALSYNC_CONFIG or ./calsync.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calsync: two-way calendar synchronization service."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    configure_logging(config.logging.level, config.logging.format, config.logging.log_root)
    ctx.obj = config


def _database(config: CalsyncConfig) -> Database:
    return Database.from_config(
        config.database.url,
        min_pool_size=config.database.min_pool_size,
        max_pool_size=config.database.max_pool_size,
    )


@asynccontextmanager
async def _engine_session(config: CalsyncConfig) -> AsyncIterator[CalendarSyncEngine]:
    """Open the DB pool and HTTP client, and yield a wired engine."""
    init_telemetry(SERVICE_NAME)
    init_metrics(SERVICE_NAME)
    db = _database(config)
    pool = await db.connect()
    try:
        async with httpx.AsyncClient(timeout=config.sync.provider_timeout_s) as http_client:
            yield build_engine(config, PostgresSyncStore(pool), http_client)
    finally:
        await db.close()


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to server.host)")
@click.option("--port", type=int, default=None, help="Bind port (defaults to server.port)")
@click.pass_obj
def serve(config: CalsyncConfig, host: str | None, port: int | None) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from calsync.api.app import create_app

    bind_host = host or config.server.host
    bind_port = port or config.server.port
    click.echo(f"Serving calsync API on {bind_host}:{bind_port}")
    # log_config=None keeps the structlog handlers installed by configure_logging.
    uvicorn.run(create_app(config), host=bind_host, port=bind_port, log_config=None)


@cli.command()
@click.option("--provision/--no-provision", default=True, help="Create the database if missing")
@click.pass_obj
def migrate(config: CalsyncConfig, provision: bool) -> None:
    """Apply database migrations (core chain) to head."""
    db = _database(config)

    async def _migrate() -> None:
        if provision:
            await db.provision()
        await run_migrations(db.url)

    asyncio.run(_migrate())
    click.echo(f"Migrations applied to {db.db_name}")


@cli.group()
def sync() -> None:
    """Run a one-shot sync pass for a user."""


def _print_result(result: SyncResult) -> None:
    click.echo(result.model_dump_json(by_alias=True, indent=2))


@sync.command("full")
@click.option("--user-id", required=True, help="User whose calendars are synced")
@click.option("--account-id", default=None, help="Limit the pass to one connected account")
@click.pass_obj
def sync_full(config: CalsyncConfig, user_id: str, account_id: str | None) -> None:
    """Windowed full pass over every enabled mapping of the user."""

    async def _run() -> SyncResult:
        async with _engine_session(config) as engine:
            return await engine.orchestrator.full_sync(user_id, account_id, trigger="cli")

    _print_result(asyncio.run(_run()))


@sync.command("incremental")
@click.option("--user-id", required=True, help="User whose calendars are synced")
@click.option("--account-id", default=None, help="Limit the pass to one connected account")
@click.pass_obj
def sync_incremental(config: CalsyncConfig, user_id: str, account_id: str | None) -> None:
    """Token-driven incremental pass over every enabled mapping of the user."""

    async def _run() -> SyncResult:
        async with _engine_session(config) as engine:
            return await engine.orchestrator.incremental_sync(user_id, account_id, trigger="cli")

    _print_result(asyncio.run(_run()))


@cli.command()
@click.pass_obj
def scheduler(config: CalsyncConfig) -> None:
    """Run the background sync scheduler until interrupted."""
    click.echo("Starting sync scheduler")
    asyncio.run(_run_scheduler(config))


async def _run_scheduler(config: CalsyncConfig) -> None:
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    async with _engine_session(config) as engine:
        if engine.scheduler is None:
            raise click.ClickException("Engine was built without a scheduler")
        engine.scheduler.start()
        try:
            await shutdown_event.wait()
        finally:
            await engine.scheduler.stop()
