"""Bot message templates (Russian and Kyrgyz).

Templates are HTML (``parse_mode="HTML"``); values substituted into them
must be escaped by the caller.
"""

DEFAULT_LANGUAGE = "ru"

MESSAGES: dict[str, dict[str, str]] = {
    "ru": {
        "welcome": (
            "👋 Добро пожаловать в BilimPoz Teacher!\n\n"
            "Для регистрации или входа используйте ссылку с сайта BilimPoz Teacher."
        ),
        "unknown_command": "❌ Неизвестная команда. Используйте /start для начала работы.",
        "invalid_parameters": "❌ Некорректные параметры",
        "user_not_found": "❌ Пользователь не найден. Проверьте правильность ссылки.",
        "already_connected": "✅ Ваш Telegram уже подключен к аккаунту.",
        "telegram_taken": "❌ Этот Telegram уже подключен к другому логину",
        "connection_success": "✅ Telegram успешно подключен!",
        "welcome_user": "👋 Добро пожаловать, {name}!",
        "connection_success_verified": "🎉 Вы можете войти на сайт и начать работу.",
        "verification_required": (
            "📋 <b>Требуется верификация аккаунта</b>\n\n"
            "Верификация - это подтверждение вашей личности администратором "
            "системы. Свяжитесь с администратором через кнопку ниже и "
            "дождитесь подтверждения."
        ),
        "admin_request": (
            "Здравствуйте! Я зарегистрировался в системе BilimPoz Teacher.\n\n"
            "Имя: {name}\nЛогин: {login}\n\n"
            "Прошу проверить и верифицировать мой аккаунт."
        ),
        "go_to_site": "🌐 Перейти на сайт",
        "contact_admin": "💬 Связаться с администратором",
        "auth_error": "❌ Ошибка авторизации. Telegram ID не совпадает.",
        "login_code": (
            "🔐 <b>Код подтверждения для входа</b>\n\n"
            "👋 Привет, {name}!\n\n"
            "🔢 Ваш код: <code>{code}</code>\n\n"
            "⏰ Код действителен {minutes} минут\n"
            "🔄 Количество попыток: {attempts}\n"
            "💻 Введите его на сайте для завершения входа"
        ),
        "recovery_code": (
            "🔑 <b>Код восстановления пароля</b>\n\n"
            "Здравствуйте, {name}!\n\n"
            "Ваш код восстановления: <code>{code}</code>\n\n"
            "Введите этот код для сброса пароля.\n\n"
            "⏰ Код действителен в течение {minutes} минут."
        ),
    },
    "kg": {
        "welcome": (
            "👋 BilimPoz Teacher'ге кош келдиңиз!\n\n"
            "Катталуу же кирүү үчүн BilimPoz Teacher сайтындагы шилтемени колдонуңуз."
        ),
        "unknown_command": "❌ Белгисиз буйрук. Иштөөнү баштоо үчүн /start колдонуңуз.",
        "invalid_parameters": "❌ Туура эмес параметрлер",
        "user_not_found": "❌ Колдонуучу табылган жок. Шилтемени текшериңиз.",
        "already_connected": "✅ Сиздин Telegram аккаунтуңузга туташтырылган.",
        "telegram_taken": "❌ Бул Telegram башка логинге туташтырылган",
        "connection_success": "✅ Telegram ийгиликтүү туташтырылды!",
        "welcome_user": "👋 Кош келдиңиз, {name}!",
        "connection_success_verified": "🎉 Сайтка кирип, иштөөнү баштай аласыз.",
        "verification_required": (
            "📋 <b>Аккаунтту ырастоо талап кылынат</b>\n\n"
            "Ырастоо - бул администратор тарабынан сиздин жеке маалыматыңызды "
            "ырастоо. Төмөнкү баскыч аркылуу администратор менен байланышып, "
            "ырастоону күтүңүз."
        ),
        "admin_request": (
            "Саламатсыздарбы! Мен BilimPoz Teacher системасына катталдым.\n\n"
            "Аты: {name}\nЛогин: {login}\n\n"
            "Аккаунтумду текшерип, ырастаңыз."
        ),
        "go_to_site": "🌐 Сайтка өтүү",
        "contact_admin": "💬 Администратор менен байланышуу",
        "auth_error": "❌ Авторизация катасы. Telegram ID дал келбейт.",
        "login_code": (
            "🔐 <b>Кирүү үчүн ырастоо коду</b>\n\n"
            "👋 Салам, {name}!\n\n"
            "🔢 Сиздин кодуңуз: <code>{code}</code>\n\n"
            "⏰ Код {minutes} мүнөткө жарактуу\n"
            "🔄 Аракеттер саны: {attempts}\n"
            "💻 Кирүүнү аяктоо үчүн аны сайтка киргизиңиз"
        ),
        "recovery_code": (
            "🔑 <b>Сырсөздү калыбына келтирүү коду</b>\n\n"
            "Саламатсызбы, {name}!\n\n"
            "Калыбына келтирүү кодуңуз: <code>{code}</code>\n\n"
            "Сырсөздү алмаштыруу үчүн ушул кодду киргизиңиз.\n\n"
            "⏰ Код {minutes} мүнөткө жарактуу."
        ),
    },
}


def normalize_language(language: str | None) -> str:
    """Map a client language tag onto a supported bot language."""
    if language in ("kg", "ky"):
        return "kg"
    return DEFAULT_LANGUAGE


def get_messages(language: str | None) -> dict[str, str]:
    return MESSAGES[normalize_language(language)]
