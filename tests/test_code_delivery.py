"""Code delivery tests: issue a code and send it through the bot."""

import pytest

from portal.models import CodePurpose
from portal.services.bot_messages import get_messages, normalize_language
from portal.services.code_delivery import (
    BotBlockedError,
    BotUnavailableError,
    DeliveryError,
    TelegramNotLinkedError,
    format_code_message,
    send_login_code,
    send_recovery_code,
)
from portal.services.telegram_bot import TelegramBlockedError, TelegramNetworkError
from portal.services.verification import ResendCooldownError, validate_code


class TestMessages:
    @pytest.mark.parametrize(
        "language, expected",
        [("ru", "ru"), ("kg", "kg"), ("ky", "kg"), (None, "ru"), ("en", "ru")],
    )
    def test_normalize_language(self, language, expected):
        assert normalize_language(language) == expected

    def test_languages_have_the_same_templates(self):
        assert get_messages("ru").keys() == get_messages("kg").keys()

    async def test_login_message(self, make_user):
        user = await make_user(name="Айгүл & Co")
        text = format_code_message(user, "012345", CodePurpose.LOGIN)

        assert "<code>012345</code>" in text
        assert "Айгүл &amp; Co" in text
        assert "5 минут" in text
        assert "Количество попыток: 5" in text

    async def test_recovery_message_in_kyrgyz(self, make_user):
        user = await make_user()
        text = format_code_message(user, "012345", CodePurpose.RECOVERY, language="kg")
        assert text.startswith("🔑 <b>Сырсөздү калыбына келтирүү коду</b>")


class TestDelivery:
    async def test_login_code_is_sent_and_valid(self, db_session, bot, make_user):
        user = await make_user(telegram_id="555")

        code = await send_login_code(db_session, bot, user)

        bot.send_message.assert_awaited_once()
        chat_id, text = bot.send_message.await_args.args
        assert chat_id == "555"
        assert code in text
        assert await validate_code(db_session, user.id, code, CodePurpose.LOGIN) is True

    async def test_recovery_code_uses_recovery_purpose(self, db_session, bot, make_user):
        user = await make_user(telegram_id="555")

        code = await send_recovery_code(db_session, bot, user)

        assert await validate_code(db_session, user.id, code, CodePurpose.LOGIN) is False
        assert await validate_code(db_session, user.id, code, CodePurpose.RECOVERY) is True

    async def test_no_bot(self, db_session, make_user):
        user = await make_user(telegram_id="555")
        with pytest.raises(BotUnavailableError):
            await send_login_code(db_session, None, user)

    async def test_not_linked(self, db_session, bot, make_user):
        user = await make_user()
        with pytest.raises(TelegramNotLinkedError):
            await send_login_code(db_session, bot, user)
        bot.send_message.assert_not_awaited()

    async def test_blocked_reports_bot_username(self, db_session, bot, make_user):
        user = await make_user(telegram_id="555")
        bot.send_message.side_effect = TelegramBlockedError(
            "sendMessage failed", "Forbidden: bot was blocked by the user", 403
        )

        with pytest.raises(BotBlockedError) as exc_info:
            await send_login_code(db_session, bot, user)

        assert exc_info.value.bot_username == "portal_bot"

    async def test_network_failure(self, db_session, bot, make_user):
        user = await make_user(telegram_id="555")
        bot.send_message.side_effect = TelegramNetworkError("sendMessage failed: ConnectError")

        with pytest.raises(DeliveryError):
            await send_login_code(db_session, bot, user)

    async def test_resend_respects_cooldown(self, db_session, bot, make_user):
        user = await make_user(telegram_id="555")
        await send_login_code(db_session, bot, user)

        with pytest.raises(ResendCooldownError):
            await send_login_code(db_session, bot, user, resend=True)
        assert bot.send_message.await_count == 1
