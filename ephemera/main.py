"""
FastAPI application factory and configuration.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ephemera.core.clock import Clock, SystemClock
from ephemera.core.config import Settings, get_settings
from ephemera.core.database import get_session_factory, init_db
from ephemera.core.feed import ChangeFeed
from ephemera.core.housekeeping import ExpirySweeper
from ephemera.core.logging import setup_logging, get_logger
from ephemera.core.metrics import set_startup_time
from ephemera.core.object_store import LocalObjectStore
from ephemera.api import conversations, feed, health, media, messages, metrics
from ephemera.api.metrics import MetricsMiddleware


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger = get_logger(__name__)
    logger.info("Starting application...")

    # Initialize database
    init_db()
    logger.info("Database initialized")

    # Record startup time for metrics
    set_startup_time()

    settings = get_settings()
    sweeper = ExpirySweeper(
        get_session_factory(),
        app.state.feed,
        app.state.clock,
        interval=settings.sweep_interval_seconds,
        object_store=app.state.object_store,
    )
    app.state.sweeper = sweeper
    sweeper.start()

    try:
        yield
    finally:
        # Shutdown
        await sweeper.stop()
        logger.info("Shutting down application...")


def create_app(settings: Optional[Settings] = None, clock: Optional[Clock] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    # Setup logging
    setup_logging(settings)
    logger = get_logger(__name__)

    # Create FastAPI app
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Backend for ephemeral messages: durable store, change feed and atomic view-and-delete",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Per-application collaborators
    app.state.feed = ChangeFeed()
    app.state.clock = clock or SystemClock()
    app.state.object_store = LocalObjectStore(settings.media_dir, settings.public_base_url)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add metrics middleware
    app.add_middleware(MetricsMiddleware)

    # Include routers
    app.include_router(conversations.router)
    app.include_router(messages.router)
    app.include_router(feed.router)
    app.include_router(media.router)
    app.include_router(health.router)
    app.include_router(metrics.router)

    logger.info(
        "Application created",
        extra={
            "extra_data": {
                "app_name": settings.app_name,
                "version": settings.app_version,
                "debug": settings.debug,
            }
        }
    )

    return app


# Create the application instance
app = create_app()
