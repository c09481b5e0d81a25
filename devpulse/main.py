"""
DevPulse - GitHub webhook ingestion and engineering metrics.
Main FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from devpulse.config import get_settings
from devpulse.api.router import api_router
from devpulse.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    correlation_scope,
)

logger = logging.getLogger("devpulse")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        with correlation_scope(cid):
            response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("DevPulse starting up (env=%s)", settings.app_env)

    # Security warnings
    if not settings.github_webhook_secret:
        logger.critical(
            "GITHUB_WEBHOOK_SECRET not set - every webhook delivery will be rejected."
        )
    if not settings.admin_api_token:
        logger.warning("ADMIN_API_TOKEN not set - replay endpoint is disabled.")

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

    pool = None
    if settings.workers_enabled:
        from devpulse.workers.task_processor import WorkerPool
        pool = WorkerPool(settings=settings)
        pool.start()
    else:
        logger.info("Worker pool disabled (WORKERS_ENABLED=false)")

    yield

    # Graceful shutdown - give executors time to finish current work
    logger.info("DevPulse shutting down")
    if pool is not None:
        await pool.stop(timeout=10.0)

    from devpulse.database import dispose_engine
    from devpulse.utils.redis_client import close_redis
    await dispose_engine()
    await close_redis()
    logger.info("DevPulse shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="DevPulse",
        description="GitHub webhook ingestion, PR metrics and flaky test detection",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(CorrelationIdMiddleware)

    # Include all routes
    application.include_router(api_router)

    return application


app = create_app()
