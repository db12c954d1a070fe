"""Sync API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that opens the DB pool and provider HTTP client, wires the
  sync engine, and optionally runs the background scheduler
- Health endpoint at GET /health
- Sync, webhook and conflict routers
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calsync.api.deps import init_engine, shutdown_engine
from calsync.api.middleware import register_error_handlers
from calsync.api.routers.conflicts import router as conflicts_router
from calsync.api.routers.sync import router as sync_router
from calsync.api.routers.webhooks import router as webhooks_router
from calsync.config import CalsyncConfig, load_config
from calsync.core.metrics import init_metrics
from calsync.core.telemetry import init_telemetry
from calsync.db import Database
from calsync.sync.engine import build_engine
from calsync.sync.store import PostgresSyncStore

logger = logging.getLogger(__name__)

SERVICE_NAME = "calsync"


def _make_lifespan(config: CalsyncConfig):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup/shutdown lifecycle for the DB pool, HTTP client and engine."""
        init_telemetry(SERVICE_NAME)
        init_metrics(SERVICE_NAME)

        db = Database.from_config(
            config.database.url,
            min_pool_size=config.database.min_pool_size,
            max_pool_size=config.database.max_pool_size,
        )
        pool = await db.connect()
        http_client = httpx.AsyncClient(timeout=config.sync.provider_timeout_s)
        engine = build_engine(config, PostgresSyncStore(pool), http_client)
        init_engine(engine)
        app.state.engine = engine

        scheduler = engine.scheduler if config.scheduler.enabled else None
        if scheduler is not None:
            scheduler.start()

        try:
            yield
        finally:
            if scheduler is not None:
                await scheduler.stop()
            shutdown_engine()
            await http_client.aclose()
            await db.close()

    return lifespan


def create_app(
    config: CalsyncConfig | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Service configuration.  Loaded from ``calsync.toml`` when omitted.
    cors_origins:
        Allowed CORS origins.  Defaults to ``config.server.cors_origins``.
    """
    if config is None:
        config = load_config()
    if cors_origins is None:
        cors_origins = config.server.cors_origins

    app = FastAPI(
        title="Calendar Sync API",
        version="0.1.0",
        lifespan=_make_lifespan(config),
    )
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(sync_router)
    app.include_router(webhooks_router)
    app.include_router(conflicts_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
