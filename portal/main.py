"""Teacher portal FastAPI application."""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from portal.config import settings, validate_secret_key
from portal.database import close_database
from portal.logging_config import get_logger, setup_logging
from portal.middleware import CorrelationIdMiddleware
from portal.middleware.rate_limit import limiter, rate_limit_exceeded_handler
from portal.routers import auth, health, telegram
from portal.services.scheduler import start_scheduler, stop_scheduler
from portal.services.telegram_polling import (
    get_polling_manager,
    shutdown_polling_managers,
)

setup_logging(
    log_format=settings.log_format,
    log_level=settings.log_level,
    service_name=settings.service_name,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    validate_secret_key()
    logger.info("Teacher portal API started")

    start_scheduler()

    if settings.telegram_polling_autostart:
        manager = get_polling_manager()
        if manager is None:
            logger.warning("Telegram polling autostart skipped: no bot token")
        else:
            await manager.start()

    yield

    logger.info("Shutting down teacher portal API...")
    await shutdown_polling_managers()
    stop_scheduler()
    await close_database()
    logger.info("Teacher portal API shutdown complete")


app = FastAPI(
    title="Teacher Portal API",
    description="Teacher portal authentication and Telegram bot service",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# First added = last executed
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

app.include_router(health.router)
app.include_router(auth.router)
app.include_router(telegram.router)


@app.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint."""
    return {
        "name": "Teacher Portal API",
        "version": "0.1.0",
        "docs": "/docs",
    }
