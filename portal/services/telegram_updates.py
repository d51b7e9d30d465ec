"""Handling of incoming Telegram updates.

The bot understands a single command, ``/start``, optionally carrying a
deep-link parameter generated by the portal:

- ``register_<login>[__<lang>]`` links the sender's Telegram account to
  the portal user ``<login>``
- ``login_<login>[__<lang>]`` sends a fresh login code to a linked user;
  an account without Telegram is linked as for ``register_``

``<lang>`` is ``ru``, ``kg`` or ``ky`` (an alias of ``kg``). A bare
``/start`` gets a welcome message; any other text gets an "unknown command"
reply. Updates without message text are ignored.
"""

import html
import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from portal.config import settings
from portal.database import get_session_maker
from portal.logging_config import get_logger
from portal.models.user import User, UserStatus
from portal.services.bot_messages import get_messages, normalize_language
from portal.services.code_delivery import DeliveryError, send_login_code
from portal.services.telegram_bot import TelegramBotClient, TelegramBotError
from portal.services.telegram_polling import UpdateHandler
from portal.services.verification import VerificationStorageError

logger = get_logger(__name__)

MODE_REGISTER = "register"
MODE_LOGIN = "login"

_START_PARAM_RE = re.compile(
    r"^(?P<mode>register|login)_(?P<login>[^\s]+?)(?:__(?P<lang>ru|kg|ky))?$"
)


@dataclass(frozen=True)
class StartParams:
    """Parsed ``/start`` deep-link parameter."""

    mode: str
    login: str
    language: str | None = None


def parse_start_param(param: str) -> StartParams | None:
    """Parse a deep-link parameter; None if it is malformed."""
    match = _START_PARAM_RE.match(param.strip())
    if match is None:
        return None
    lang = match.group("lang")
    return StartParams(
        mode=match.group("mode"),
        login=match.group("login"),
        language=normalize_language(lang) if lang else None,
    )


def _site_button(messages: dict[str, str]) -> dict[str, Any]:
    return {
        "inline_keyboard": [[{"text": messages["go_to_site"], "url": settings.site_url}]]
    }


def _admin_button(messages: dict[str, str], user: User) -> dict[str, Any] | None:
    admin = settings.admin_telegram_login.lstrip("@")
    if not admin:
        return None
    request_text = messages["admin_request"].format(name=user.name, login=user.login)
    url = f"https://t.me/{admin}?text={quote(request_text)}"
    return {"inline_keyboard": [[{"text": messages["contact_admin"], "url": url}]]}


async def _reply(
    client: TelegramBotClient,
    chat_id: int | str,
    text: str,
    reply_markup: dict[str, Any] | None = None,
) -> None:
    try:
        await client.send_message(
            chat_id, text, parse_mode="HTML", reply_markup=reply_markup
        )
    except TelegramBotError as e:
        logger.warning("Failed to send bot reply", chat_id=str(chat_id), error=str(e))


async def _find_user(db: AsyncSession, login: str) -> User | None:
    result = await db.execute(select(User).where(User.login == login))
    user = result.scalar_one_or_none()
    if user is None or user.is_blocked:
        return None
    return user


async def _telegram_owner(db: AsyncSession, telegram_id: str) -> User | None:
    result = await db.execute(select(User).where(User.telegram_id == telegram_id))
    return result.scalar_one_or_none()


async def _link_account(
    db: AsyncSession,
    user: User,
    telegram_id: str,
    telegram_username: str | None,
    language: str,
) -> bool:
    """Attach a Telegram account to ``user``; False if it belongs to another user."""
    owner = await _telegram_owner(db, telegram_id)
    if owner is not None and owner.id != user.id:
        return False

    user.telegram_id = telegram_id
    user.telegram_username = telegram_username
    user.language = language
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return False

    logger.info("Telegram account linked", user_id=str(user.id), login=user.login)
    return True


async def _send_link_confirmation(
    client: TelegramBotClient,
    chat_id: int | str,
    user: User,
    messages: dict[str, str],
) -> None:
    await _reply(
        client,
        chat_id,
        "\n\n".join(
            [
                messages["connection_success"],
                messages["welcome_user"].format(name=html.escape(user.name or user.login)),
            ]
        ),
    )
    if user.status == UserStatus.VERIFIED:
        await _reply(
            client,
            chat_id,
            messages["connection_success_verified"],
            _site_button(messages),
        )
    else:
        await _reply(
            client,
            chat_id,
            messages["verification_required"],
            _admin_button(messages, user),
        )


async def _refresh_telegram_username(
    db: AsyncSession, user: User, sender: dict[str, Any]
) -> None:
    username = sender.get("username")
    if user.telegram_username != username:
        user.telegram_username = username
        await db.commit()


async def _handle_register(
    db: AsyncSession,
    client: TelegramBotClient,
    chat_id: int | str,
    sender: dict[str, Any],
    params: StartParams,
    user: User,
) -> None:
    language = params.language or user.language
    messages = get_messages(language)
    telegram_id = str(sender["id"])

    if user.telegram_id == telegram_id:
        await _refresh_telegram_username(db, user, sender)
        await _reply(client, chat_id, messages["already_connected"], _site_button(messages))
        return

    if user.telegram_id is not None:
        await _reply(client, chat_id, messages["auth_error"])
        return

    if not await _link_account(
        db, user, telegram_id, sender.get("username"), normalize_language(language)
    ):
        await _reply(client, chat_id, messages["telegram_taken"])
        return

    await _send_link_confirmation(client, chat_id, user, messages)


async def _handle_login(
    db: AsyncSession,
    client: TelegramBotClient,
    chat_id: int | str,
    sender: dict[str, Any],
    params: StartParams,
    user: User,
) -> None:
    # An unlinked account goes through linking first; the code comes on the
    # next login.
    if user.telegram_id is None:
        await _handle_register(db, client, chat_id, sender, params, user)
        return

    language = params.language or user.language
    if user.telegram_id != str(sender["id"]):
        await _reply(client, chat_id, get_messages(language)["auth_error"])
        return

    await _refresh_telegram_username(db, user, sender)
    try:
        await send_login_code(db, client, user, language=language)
    except (DeliveryError, VerificationStorageError) as e:
        logger.warning(
            "Login code from /start not delivered",
            user_id=str(user.id),
            error=str(e),
        )


async def handle_update(
    db: AsyncSession,
    client: TelegramBotClient,
    update: dict[str, Any],
) -> None:
    """Process one update from getUpdates."""
    message = update.get("message") or {}
    text = (message.get("text") or "").strip()
    sender = message.get("from") or {}
    chat_id = (message.get("chat") or {}).get("id")
    if not text or chat_id is None or "id" not in sender:
        return

    command, _, param = text.partition(" ")
    # Deep links from groups arrive as /start@botname
    command = command.split("@", 1)[0]
    default_messages = get_messages(sender.get("language_code"))

    if command != "/start":
        await _reply(client, chat_id, default_messages["unknown_command"])
        return

    if not param.strip():
        await _reply(client, chat_id, default_messages["welcome"])
        return

    params = parse_start_param(param)
    if params is None:
        await _reply(client, chat_id, default_messages["invalid_parameters"])
        return

    messages = get_messages(params.language)
    user = await _find_user(db, params.login)
    if user is None:
        logger.info("Deep link for unknown user", login=params.login, mode=params.mode)
        await _reply(client, chat_id, messages["user_not_found"])
        return

    if params.mode == MODE_REGISTER:
        await _handle_register(db, client, chat_id, sender, params, user)
    else:
        await _handle_login(db, client, chat_id, sender, params, user)


def make_update_handler(
    client: TelegramBotClient,
    session_maker: async_sessionmaker[AsyncSession] | None = None,
) -> UpdateHandler:
    """Bind ``handle_update`` to a client and a fresh session per update."""

    async def handler(update: dict[str, Any]) -> None:
        maker = session_maker or get_session_maker()
        async with maker() as db:
            await handle_update(db, client, update)

    return handler
