# guidebook/main.py
"""
FastAPI application for the Guidebook booking engine.

Run with:
    uvicorn guidebook.main:app
"""

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI, Response

from . import __version__
from .core.config import settings
from .database import init_db
from .errors import register_error_handlers
from .monitoring.prometheus_metrics import prometheus_metrics
from .routes.v1 import availability as availability_v1, bookings as bookings_v1

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown."""
    logger.info(f"Guidebook booking engine starting up (environment: {settings.environment})")
    if not settings.is_production:
        # Production schemas are managed by migrations
        init_db()
    logger.info(
        "Payment gateway: %s, slot lock backend: %s",
        settings.payment_gateway,
        settings.slot_lock_backend,
    )
    yield
    logger.info("Guidebook booking engine shutting down")


def create_app() -> FastAPI:
    application = FastAPI(
        title="Guidebook Booking Engine",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=app_lifespan,
    )
    register_error_handlers(application)

    # Create API v1 router
    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(bookings_v1.router, prefix="/bookings")
    api_v1.include_router(availability_v1.router, prefix="/guides")
    application.include_router(api_v1)

    @application.get("/metrics", include_in_schema=False)
    def metrics() -> Response:
        return Response(
            content=prometheus_metrics.get_metrics(),
            media_type=prometheus_metrics.get_content_type(),
        )

    @application.get("/health", include_in_schema=False)
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    return application


app = create_app()
