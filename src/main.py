"""
Recon pipeline sync - local-first GoHighLevel pipeline board with a durable
write-behind queue.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from src.config import get_settings
from src.api.router import api_router
from src.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("recon")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


def _start_workers(settings) -> list[asyncio.Task]:
    """In-process pollers, each enabled by a non-zero interval."""
    worker_tasks: list[asyncio.Task] = []

    if settings.sync_poll_interval_seconds > 0:
        from src.workers.move_sync import run_move_sync
        worker_tasks.append(asyncio.create_task(run_move_sync()))
        logger.info("Move sync worker started")

    if settings.opportunity_sync_interval_seconds > 0:
        from src.workers.opportunity_sync import run_opportunity_sync
        worker_tasks.append(asyncio.create_task(run_opportunity_sync()))
        logger.info("Opportunity sync worker started")

    if settings.token_refresh_interval_seconds > 0:
        from src.workers.token_refresh import run_token_refresh
        worker_tasks.append(asyncio.create_task(run_token_refresh()))
        logger.info("Token refresh worker started")

    if not worker_tasks:
        logger.info("No in-process workers enabled - relying on the external scheduler")
    return worker_tasks


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("Recon pipeline sync starting up (env=%s)", settings.app_env)

    # Security warnings
    if not settings.encryption_key:
        logger.warning(
            "ENCRYPTION_KEY not set - GHL OAuth tokens will be stored unencrypted. "
            "Generate a Fernet key for production."
        )
    if not settings.cron_secret:
        logger.warning("CRON_SECRET not set - scheduler endpoints are unguarded")
    if not settings.ghl_oauth_client_id or not settings.ghl_oauth_client_secret:
        logger.warning("GHL OAuth client credentials not set - queued moves will fail to sync")

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    worker_tasks = _start_workers(settings)

    yield

    # Graceful shutdown - give workers time to finish current work
    logger.info("Shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        # Wait up to 10 seconds for workers to finish
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    from src.database import dispose_engine
    await dispose_engine()
    logger.info("Shutdown complete - all %d workers stopped", len(worker_tasks))


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="Recon Pipeline Sync",
        description="Local-first GoHighLevel pipeline board with queued CRM sync",
        version="1.0.0",
        lifespan=lifespan,
    )

    origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
    if settings.app_env != "production":
        origins += ["http://localhost:3000", "http://localhost:5173"]
    origins.append(settings.app_base_url)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID",
            "X-API-Key", "X-Cron-Secret", "Accept", "Origin",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    application.include_router(api_router)

    return application


app = create_app()
