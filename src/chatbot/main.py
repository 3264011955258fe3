"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for pipeline startup and shutdown, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.chatbot.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.chatbot.api.v1.router import router as v1_router
from src.chatbot.config import get_settings
from src.chatbot.core.database import close_db
from src.chatbot.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.chatbot.core.redis import close_redis
from src.chatbot.pipeline import Pipeline, build_pipeline, close_pipeline


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: build the pipeline on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is None:
        try:
            pipeline = await build_pipeline(settings)
        except Exception:
            # Intake answers 503 and /health/ready reports not_ready.
            log.error("pipeline_init_failed", exc_info=True)
        app.state.pipeline = pipeline

    # Tenants with a backlog left by a previous process get their workers back
    if pipeline is not None:
        try:
            await pipeline.registry.resume(pipeline.dispatcher.handle)
        except Exception:
            log.warning("worker_resume_failed", exc_info=True)

        if pipeline.kb_expiry is not None:
            pipeline.kb_expiry.start(settings.KB_EXPIRY_INTERVAL)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    if pipeline is not None:
        try:
            await close_pipeline(pipeline)
        except Exception:
            log.warning("pipeline_close_failed", exc_info=True)

    await close_db()
    await close_redis()


def create_app(pipeline: Pipeline | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    A pre-built ``pipeline`` skips construction in the lifespan; tests use
    this to run the app against in-memory components.
    """
    settings = get_settings()

    app = FastAPI(
        title="Multi-Tenant Chatbot API",
        version="0.1.0",
        description="Tenant-isolated message intake, RAG, and reply dispatch",
        lifespan=lifespan,
    )
    if pipeline is not None:
        app.state.pipeline = pipeline

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Include v1 API router (health, intake, agents)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
