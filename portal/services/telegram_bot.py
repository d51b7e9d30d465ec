"""Telegram Bot API client.

Thin async wrapper over the Bot API methods the portal uses: bot info,
messaging, update polling and webhook management. The bot token is
resolved once into an immutable ``BotConfig`` and handed to the client.

Failures are classified so callers can react to them:

- ``TelegramConflictError``: another consumer is already polling (HTTP 409)
- ``TelegramBlockedError``: the user blocked the bot (HTTP 403)
- ``TelegramNetworkError``: transport failure or timeout
- ``TelegramBotError``: any other non-ok response
"""

from dataclasses import dataclass
from typing import Any

import httpx

from portal.config import Settings, settings
from portal.logging_config import get_logger

logger = get_logger(__name__)

ALLOWED_UPDATES = '["message"]'
MAX_UPDATES_PER_REQUEST = 100

# Added to the long-poll timeout so the HTTP client never gives up first
_LONG_POLL_GRACE_SECONDS = 5.0


class TelegramBotError(Exception):
    """Error communicating with the Telegram Bot API."""

    def __init__(
        self,
        message: str,
        description: str | None = None,
        error_code: int | None = None,
    ):
        super().__init__(message)
        self.description = description
        self.error_code = error_code


class TelegramConflictError(TelegramBotError):
    """Another getUpdates consumer (or a webhook) holds the update feed."""


class TelegramBlockedError(TelegramBotError):
    """The recipient blocked the bot or never started it."""


class TelegramNetworkError(TelegramBotError):
    """The Bot API could not be reached."""


@dataclass(frozen=True)
class BotConfig:
    """Resolved bot connection settings."""

    token: str
    api_base: str = "https://api.telegram.org"
    request_timeout_seconds: float = 15.0
    poll_timeout_seconds: int = 1
    username: str | None = None

    def method_url(self, method: str) -> str:
        return f"{self.api_base.rstrip('/')}/bot{self.token}/{method}"

    def __repr__(self) -> str:
        # Never leak the token into logs or tracebacks
        return f"BotConfig(api_base={self.api_base!r}, username={self.username!r})"


def resolve_bot_config(source: Settings | None = None) -> BotConfig | None:
    """Build a ``BotConfig`` from settings.

    Returns:
        The resolved config, or None when no bot token is configured.
    """
    source = source or settings
    token = source.telegram_bot_token.strip()
    if not token:
        return None
    return BotConfig(
        token=token,
        api_base=source.telegram_api_base,
        request_timeout_seconds=source.telegram_request_timeout_seconds,
        poll_timeout_seconds=source.telegram_poll_timeout_seconds,
        username=source.telegram_bot_username or None,
    )


def is_conflict(description: str | None, error_code: int | None) -> bool:
    """Whether a Bot API error means another consumer holds the feed."""
    if error_code == 409:
        return True
    return bool(description) and "conflict" in description.lower()


def _classify_error(method: str, description: str, error_code: int | None) -> TelegramBotError:
    message = f"{method} failed: {error_code} {description}"
    if is_conflict(description, error_code):
        return TelegramConflictError(message, description, error_code)
    lowered = (description or "").lower()
    if error_code == 403 or "blocked" in lowered or "chat not found" in lowered:
        return TelegramBlockedError(message, description, error_code)
    return TelegramBotError(message, description, error_code)


class TelegramBotClient:
    """Async client for one bot.

    A fresh ``httpx.AsyncClient`` is opened per call; calls are infrequent
    and this keeps the client safe to share across event loops.
    """

    def __init__(self, config: BotConfig):
        self.config = config
        self._bot_username: str | None = config.username

    async def _call(
        self,
        method: str,
        *,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Invoke a Bot API method and return its ``result`` field."""
        url = self.config.method_url(method)
        try:
            async with httpx.AsyncClient(
                timeout=timeout or self.config.request_timeout_seconds
            ) as client:
                if payload is not None:
                    response = await client.post(url, json=payload)
                else:
                    response = await client.get(url, params=params)
        except httpx.HTTPError as e:
            raise TelegramNetworkError(
                f"{method} failed: {type(e).__name__}", description=str(e)
            ) from e

        try:
            data = response.json()
        except ValueError:
            raise _classify_error(method, response.text, response.status_code)

        if response.status_code != 200 or not data.get("ok"):
            raise _classify_error(
                method,
                data.get("description", "Unknown"),
                data.get("error_code", response.status_code),
            )

        return data.get("result")

    async def get_me(self) -> dict[str, Any]:
        """Call getMe and remember the bot username.

        Raises:
            TelegramBotError: If the token is invalid or the call fails.
        """
        result = await self._call("getMe", timeout=10.0)
        self._bot_username = result.get("username")
        return result

    async def get_bot_username(self) -> str:
        """Return the bot's username (without @), calling getMe once."""
        if self._bot_username is None:
            await self.get_me()
        return self._bot_username or ""

    async def send_message(
        self,
        chat_id: int | str,
        text: str,
        parse_mode: str | None = None,
        reply_markup: dict[str, Any] | None = None,
    ) -> bool:
        """Send a message to a Telegram chat.

        Returns:
            True if message was sent successfully.

        Raises:
            TelegramBlockedError: If the user blocked the bot.
            TelegramBotError: If the API call fails.
        """
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if reply_markup:
            payload["reply_markup"] = reply_markup

        await self._call("sendMessage", payload=payload, timeout=10.0)
        return True

    async def get_updates(
        self,
        offset: int | None = None,
        timeout: int | None = None,
        limit: int = MAX_UPDATES_PER_REQUEST,
    ) -> list[dict[str, Any]]:
        """Long-poll for updates.

        Args:
            offset: Smallest update_id to return; earlier ones are confirmed.
            timeout: Server-side long-poll timeout in seconds.
            limit: Maximum number of updates to return.

        Raises:
            TelegramConflictError: If another consumer is polling.
            TelegramNetworkError: If the API could not be reached.
            TelegramBotError: For any other failure.
        """
        poll_timeout = (
            self.config.poll_timeout_seconds if timeout is None else timeout
        )
        params: dict[str, Any] = {
            "timeout": poll_timeout,
            "limit": limit,
            "allowed_updates": ALLOWED_UPDATES,
        }
        if offset is not None:
            params["offset"] = offset

        result = await self._call(
            "getUpdates",
            params=params,
            timeout=max(
                self.config.request_timeout_seconds,
                poll_timeout + _LONG_POLL_GRACE_SECONDS,
            ),
        )
        return result or []

    async def delete_webhook(self, drop_pending_updates: bool = True) -> Any:
        """Remove the webhook so getUpdates can be used."""
        return await self._call(
            "deleteWebhook",
            payload={"drop_pending_updates": drop_pending_updates},
        )

    async def get_webhook_info(self) -> dict[str, Any]:
        """Return the current webhook registration (url is empty if none)."""
        return await self._call("getWebhookInfo") or {}


_client: TelegramBotClient | None = None


def get_bot_client() -> TelegramBotClient | None:
    """Process-wide client for the configured bot, or None without a token."""
    global _client
    if _client is None:
        config = resolve_bot_config()
        if config is None:
            return None
        _client = TelegramBotClient(config)
    return _client


def reset_bot_client() -> None:
    """Forget the cached client. Used for testing."""
    global _client
    _client = None
