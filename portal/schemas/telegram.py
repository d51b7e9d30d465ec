"""Telegram bot admin schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class BotInfoResponse(BaseModel):
    """Response schema for GET /api/telegram/bot-info."""

    id: int
    username: str
    first_name: str
    can_join_groups: bool | None = None
    can_read_all_group_messages: bool | None = None


class PollingStatusResponse(BaseModel):
    """Polling loop snapshot."""

    is_active: bool
    state: str
    offset: int
    last_error: str | None = None
    conflict_count: int = 0
    last_poll_at: datetime | None = None


class PollingActionResponse(BaseModel):
    """Response schema for POST /api/telegram/polling/{start,stop}."""

    success: bool
    message: str
    status: PollingStatusResponse


class ForceClearResponse(BaseModel):
    """Response schema for POST /api/telegram/force-clear."""

    success: bool
    attempts: int
    final_offset: int
    cleared_updates: int
    drained: bool
    aborted: bool
    webhook_deleted: bool
    webhook_info: dict[str, Any] | None = None
    errors: list[str] = []


class WebhookClearResponse(BaseModel):
    """Response schema for POST /api/telegram/webhook-clear."""

    success: bool
    previous_webhook: dict[str, Any]
    current_webhook: dict[str, Any]
