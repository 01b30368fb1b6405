"""
Financial account connection service — application entry point.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from auth.routes import router as auth_router
from config.settings import config
from connectors.context import ConnectorContext, build_context
from connectors.routes import router as financial_router
from database.helpers import ensure_provider, list_active_providers

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "sqlalchemy.engine", "aiosqlite"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


async def _sync_provider_rows(ctx: ConnectorContext) -> None:
    """Upsert a ``providers`` row for every configured connector and retire the rest."""
    configured = set(ctx.registry.names())
    async with ctx.service.session_factory() as session:
        for row in await list_active_providers(session):
            if row.name not in configured:
                row.is_active = False
                logger.info("Provider %s is no longer configured; row deactivated", row.name)
        for provider in ctx.registry.list():
            await ensure_provider(
                session, provider.name, provider.display_name, provider.oauth_config()
            )
        await session.commit()


def create_app(context: Optional[ConnectorContext] = None) -> FastAPI:
    ctx = context or build_context(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not len(ctx.registry):
            logger.warning("No financial providers configured; set *_CLIENT_ID / *_CLIENT_SECRET")

        ok, err = ctx.cipher.validate_configuration()
        if not ok:
            logger.warning("Token encryption is not usable: %s", err)

        await _sync_provider_rows(ctx)

        interval = ctx.settings.token_refresh_interval_seconds
        if interval > 0:
            ctx.service.start_refresh_loop(interval)

        logger.info("Application ready to accept requests.")
        try:
            yield
        finally:
            await ctx.service.stop_refresh_loop()

    app = FastAPI(
        title="Financial Account Connections",
        version="1.0.0",
        description="OAuth linking of brokerage and exchange accounts.",
        lifespan=lifespan,
    )
    app.state.connectors = ctx

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ctx.settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Routes
    prefix = ctx.settings.api_prefix
    app.include_router(auth_router, prefix=f"{prefix}/auth")
    app.include_router(financial_router, prefix=f"{prefix}/financial")

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "providers": ctx.registry.names()}

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
