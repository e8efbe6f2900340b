"""FastAPI application factory for the OAuth credential pool."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
import structlog
from fastapi import FastAPI
from structlog import get_logger

from oauth_pool import __version__
from oauth_pool.api.middleware.errors import setup_error_handlers
from oauth_pool.api.middleware.logging import AccessLogMiddleware
from oauth_pool.api.routes.oauth import router as oauth_router
from oauth_pool.config.settings import Settings, get_settings
from oauth_pool.core.clock import Clock, system_clock
from oauth_pool.core.logging import setup_logging
from oauth_pool.db import close_db, init_db
from oauth_pool.services.credential_service import CredentialService


logger = get_logger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
    clock: Clock = system_clock,
    home: Path | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Optional settings override. If None, uses get_settings().
        http_client: Client used for provider calls; tests pass one backed
            by a mock transport.
        clock: Time source for expiry, cool-downs and attempt deadlines.
        home: Home directory scanned for local CLI credentials.

    Returns:
        Configured FastAPI application instance.
    """
    if settings is None:
        settings = get_settings()

    if not structlog.is_configured():
        setup_logging(
            json_logs=settings.server.log_format == "json",
            log_level_name=settings.server.log_level,
            log_file=settings.server.log_file,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        app.state.settings = settings
        await init_db(settings.storage.database_path)

        service = CredentialService(
            settings, http_client=http_client, clock=clock, home=home
        )
        await service.start()
        app.state.credential_service = service

        logger.info(
            "server_start",
            url=settings.server_url,
            database=str(settings.storage.database_path),
            storage_ready=settings.storage.storage_ready,
        )
        if not settings.storage.storage_ready:
            logger.warning(
                "storage_not_ready",
                hint="Set OAUTH_POOL_ENCRYPTION_SECRET to enable credential writes",
            )

        yield

        logger.debug("server_stop")
        await service.aclose()
        app.state.credential_service = None
        await close_db()

    app = FastAPI(
        title="OAuth Credential Pool",
        description="OAuth account pool with failover for agent executions",
        version=__version__,
        lifespan=lifespan,
    )

    setup_error_handlers(app)
    app.add_middleware(AccessLogMiddleware)

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    app.include_router(oauth_router)

    return app


def get_app() -> FastAPI:
    """Get the FastAPI application instance."""
    return create_app()
