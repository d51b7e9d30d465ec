"""Verification code delivery via Telegram.

Issues a code through the verification store and sends it to the user's
linked Telegram chat using the localized templates.
"""

import html

from sqlalchemy.ext.asyncio import AsyncSession

from portal.config import settings
from portal.logging_config import get_logger
from portal.models.user import User
from portal.models.verification_code import CodePurpose
from portal.services.bot_messages import get_messages
from portal.services.telegram_bot import (
    TelegramBlockedError,
    TelegramBotClient,
    TelegramBotError,
)
from portal.services.verification import issue_code, resend_code

logger = get_logger(__name__)


class DeliveryError(Exception):
    """A code was issued but could not be delivered."""


class BotUnavailableError(DeliveryError):
    """No bot token is configured."""


class TelegramNotLinkedError(DeliveryError):
    """The user has no linked Telegram account."""


class BotBlockedError(DeliveryError):
    """The user blocked the bot or never pressed Start."""

    def __init__(self, bot_username: str | None = None):
        super().__init__("Bot blocked by user")
        self.bot_username = bot_username


def _ttl_minutes() -> int:
    return max(1, settings.verification_code_ttl_seconds // 60)


def format_code_message(
    user: User,
    code: str,
    purpose: CodePurpose,
    language: str | None = None,
) -> str:
    """Render the HTML message carrying a code."""
    messages = get_messages(language or user.language)
    key = "login_code" if purpose == CodePurpose.LOGIN else "recovery_code"
    return messages[key].format(
        name=html.escape(user.name or user.login),
        code=code,
        minutes=_ttl_minutes(),
        attempts=settings.verification_max_attempts,
    )


async def deliver_code(
    db: AsyncSession,
    client: TelegramBotClient | None,
    user: User,
    purpose: CodePurpose,
    *,
    language: str | None = None,
    resend: bool = False,
) -> str:
    """Issue a code for ``user`` and send it over Telegram.

    Args:
        db: Database session.
        client: Bot client, None when the bot is not configured.
        user: Recipient; must have ``telegram_id`` set.
        purpose: LOGIN or RECOVERY.
        language: Overrides the user's stored language.
        resend: Apply the resend cooldown before issuing.

    Returns:
        The issued code.

    Raises:
        BotUnavailableError: If no bot is configured.
        TelegramNotLinkedError: If the user has no Telegram account.
        BotBlockedError: If Telegram refuses delivery to the user.
        DeliveryError: If the Bot API call fails otherwise.
        ResendCooldownError: If ``resend`` and the cooldown has not elapsed.
        VerificationStorageError: If the code could not be stored.
    """
    if client is None:
        raise BotUnavailableError("Telegram bot is not configured")
    if not user.telegram_id:
        raise TelegramNotLinkedError("Telegram account is not linked")

    if resend:
        code = await resend_code(db, user.id, purpose)
    else:
        code = await issue_code(db, user.id, purpose)

    text = format_code_message(user, code, purpose, language)
    try:
        await client.send_message(user.telegram_id, text, parse_mode="HTML")
    except TelegramBlockedError as e:
        logger.warning(
            "Code delivery refused, bot blocked",
            user_id=str(user.id),
            purpose=purpose.value,
            error=str(e),
        )
        bot_username = None
        try:
            bot_username = await client.get_bot_username()
        except TelegramBotError:
            pass
        raise BotBlockedError(bot_username) from e
    except TelegramBotError as e:
        logger.error(
            "Code delivery failed",
            user_id=str(user.id),
            purpose=purpose.value,
            error=str(e),
        )
        raise DeliveryError("Failed to send code via Telegram") from e

    logger.info(
        "Verification code delivered",
        user_id=str(user.id),
        purpose=purpose.value,
    )
    return code


async def send_login_code(
    db: AsyncSession,
    client: TelegramBotClient | None,
    user: User,
    language: str | None = None,
    resend: bool = False,
) -> str:
    return await deliver_code(
        db, client, user, CodePurpose.LOGIN, language=language, resend=resend
    )


async def send_recovery_code(
    db: AsyncSession,
    client: TelegramBotClient | None,
    user: User,
    language: str | None = None,
    resend: bool = False,
) -> str:
    return await deliver_code(
        db, client, user, CodePurpose.RECOVERY, language=language, resend=resend
    )
