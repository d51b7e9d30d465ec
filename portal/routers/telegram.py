"""Telegram bot administration router.

Admin-only endpoints to inspect the bot and control the update polling
loop. All return 503 when no bot token is configured.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from portal.core.auth import AdminUser
from portal.logging_config import get_logger
from portal.schemas.telegram import (
    BotInfoResponse,
    ForceClearResponse,
    PollingActionResponse,
    PollingStatusResponse,
    WebhookClearResponse,
)
from portal.services.telegram_bot import (
    TelegramBotClient,
    TelegramBotError,
    get_bot_client,
)
from portal.services.telegram_polling import (
    PollingManager,
    clear_webhook,
    get_polling_manager,
)

logger = get_logger(__name__)

router = APIRouter(
    prefix="/api/telegram",
    tags=["telegram"],
)


def require_bot_client(
    client: TelegramBotClient | None = Depends(get_bot_client),
) -> TelegramBotClient:
    """Raise 503 if the Telegram bot token is not configured."""
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Telegram bot is not configured",
        )
    return client


def require_polling_manager(
    client: TelegramBotClient = Depends(require_bot_client),
) -> PollingManager:
    return get_polling_manager(client)


def _status_response(manager: PollingManager) -> PollingStatusResponse:
    return PollingStatusResponse(**manager.status().to_dict())


@router.get("/bot-info", response_model=BotInfoResponse)
async def get_bot_info(
    admin: AdminUser,
    client: TelegramBotClient = Depends(require_bot_client),
) -> BotInfoResponse:
    """Call getMe for the configured bot."""
    try:
        info = await client.get_me()
    except TelegramBotError as e:
        logger.warning("getMe failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Telegram bot is temporarily unavailable",
        )
    return BotInfoResponse(**info)


@router.get("/polling/status", response_model=PollingStatusResponse)
async def get_polling_status(
    admin: AdminUser,
    manager: PollingManager = Depends(require_polling_manager),
) -> PollingStatusResponse:
    return _status_response(manager)


@router.post("/polling/start", response_model=PollingActionResponse)
async def start_polling(
    admin: AdminUser,
    manager: PollingManager = Depends(require_polling_manager),
) -> PollingActionResponse:
    """Start the polling loop. A no-op if it is already running."""
    was_active = manager.is_active
    await manager.start()
    logger.info("Polling start requested", admin_id=str(admin.id), was_active=was_active)
    return PollingActionResponse(
        success=True,
        message="Polling already active" if was_active else "Polling started",
        status=_status_response(manager),
    )


@router.post("/polling/stop", response_model=PollingActionResponse)
async def stop_polling(
    admin: AdminUser,
    manager: PollingManager = Depends(require_polling_manager),
) -> PollingActionResponse:
    """Ask the polling loop to stop. A no-op if it is not running."""
    was_active = manager.is_active
    await manager.stop()
    logger.info("Polling stop requested", admin_id=str(admin.id), was_active=was_active)
    return PollingActionResponse(
        success=True,
        message="Polling stopping" if was_active else "Polling not active",
        status=_status_response(manager),
    )


@router.post("/force-clear", response_model=ForceClearResponse)
async def force_clear(
    admin: AdminUser,
    manager: PollingManager = Depends(require_polling_manager),
) -> ForceClearResponse:
    """Delete the webhook and discard every pending update."""
    report = await manager.force_clear()
    logger.info(
        "Force-clear requested",
        admin_id=str(admin.id),
        attempts=report.attempts,
        drained=report.drained,
    )
    return ForceClearResponse(success=report.drained, **report.to_dict())


@router.post("/webhook-clear", response_model=WebhookClearResponse)
async def webhook_clear(
    admin: AdminUser,
    client: TelegramBotClient = Depends(require_bot_client),
) -> WebhookClearResponse:
    """Remove any registered webhook, dropping its pending updates."""
    try:
        result = await clear_webhook(client)
    except TelegramBotError as e:
        logger.warning("Webhook clear failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to clear webhook: {e.description or e}",
        )
    return WebhookClearResponse(
        success=bool(result["delete_result"]),
        previous_webhook=result["previous_webhook"],
        current_webhook=result["current_webhook"],
    )
