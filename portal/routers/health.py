"""Health check endpoints for container orchestration."""

from typing import Any

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse

from portal.database import check_database_connection
from portal.services.telegram_bot import get_bot_client
from portal.services.telegram_polling import STATE_STOPPED, get_polling_manager

router = APIRouter(tags=["Health"])


def _telegram_state() -> dict[str, Any]:
    """Bot configuration and polling state. Never calls the Bot API."""
    client = get_bot_client()
    if client is None:
        return {"configured": False, "polling": STATE_STOPPED}
    return {"configured": True, "polling": get_polling_manager(client).status().state}


@router.get("/health", response_model=None)
async def health_check() -> Response:
    """Database and bot status.

    Returns 503 with ``"status": "degraded"`` when the database is
    unreachable. A stopped polling loop is reported but does not degrade
    health.
    """
    db_connected = await check_database_connection()
    content = {
        "status": "healthy" if db_connected else "degraded",
        "database": "connected" if db_connected else "disconnected",
        "telegram": _telegram_state(),
    }
    return JSONResponse(
        status_code=(
            status.HTTP_200_OK if db_connected else status.HTTP_503_SERVICE_UNAVAILABLE
        ),
        content=content,
    )


@router.get("/health/live")
async def liveness_probe() -> dict[str, Any]:
    """Liveness probe. Does not check external dependencies."""
    return {"status": "alive"}


@router.get("/health/ready", response_model=None)
async def readiness_probe() -> Response:
    """Readiness probe: the service can reach its database."""
    if await check_database_connection():
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": "connected"},
        )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "not_ready", "database": "disconnected"},
    )
