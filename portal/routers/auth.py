"""Authentication router.

Two-step login: password first, then a one-time code delivered through the
Telegram bot. Also code resend, password recovery over Telegram, logout and
the current-user endpoint.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.config import settings
from portal.core.auth import CurrentUser
from portal.core.security import (
    create_access_token,
    hash_password,
    validate_password_strength,
    verify_password,
)
from portal.database import get_db
from portal.logging_config import get_logger
from portal.middleware.rate_limit import (
    LOGIN_RATE,
    RECOVERY_RATE,
    RESEND_RATE,
    VERIFY_RATE,
    limiter,
)
from portal.models.user import User
from portal.models.verification_code import CodePurpose
from portal.schemas.auth import (
    ErrorResponse,
    ForgotPasswordRequest,
    ForgotPasswordResponse,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    ResendCodeRequest,
    ResendCodeResponse,
    ResetPasswordRequest,
    UserResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from portal.services.bot_messages import normalize_language
from portal.services.code_delivery import (
    BotBlockedError,
    BotUnavailableError,
    DeliveryError,
    TelegramNotLinkedError,
    send_login_code,
    send_recovery_code,
)
from portal.services.telegram_bot import TelegramBotClient, get_bot_client
from portal.services.verification import (
    ResendCooldownError,
    VerificationStorageError,
    mark_code_used,
    validate_code,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["authentication"])

INVALID_CODE_DETAIL = "Invalid or expired code"
INVALID_CREDENTIALS_DETAIL = "Invalid login or password"


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _bot_link(bot_username: str | None, mode: str, login: str, language: str) -> str | None:
    if not bot_username:
        return None
    return f"https://t.me/{bot_username}?start={mode}_{login}__{language}"


def _storage_unavailable(e: VerificationStorageError) -> HTTPException:
    logger.error("Verification store unavailable", error=str(e))
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Verification service temporarily unavailable",
    )


def _bot_username(client: TelegramBotClient | None) -> str | None:
    if client is None:
        return None
    return client.config.username or None


async def _find_user(db: AsyncSession, login: str) -> User | None:
    result = await db.execute(select(User).where(User.login == login.strip()))
    return result.scalar_one_or_none()


def _set_session_cookie(response: Response, user: User) -> int:
    token = create_access_token(
        user_id=user.id,
        login=user.login,
        role=user.role.value,
    )
    max_age = settings.session_expire_hours * 3600
    response.set_cookie(
        key=settings.jwt_cookie_name,
        value=token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=max_age,
        path="/",
    )
    return max_age


def _delivery_http_error(e: DeliveryError, client: TelegramBotClient | None) -> HTTPException:
    if isinstance(e, BotUnavailableError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Telegram bot is not configured",
        )
    if isinstance(e, BotBlockedError):
        username = e.bot_username or (client.config.username if client else None)
        hint = f" @{username}" if username else ""
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"The bot is blocked. Open{hint} in Telegram and press Start",
        )
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail="Failed to send code via Telegram",
    )


# ============================================================================
# Login
# ============================================================================


@router.post(
    "/login",
    response_model=LoginResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid credentials"},
        403: {"model": ErrorResponse, "description": "Account blocked or bot blocked"},
        503: {"model": ErrorResponse, "description": "Bot or store unavailable"},
    },
)
@limiter.limit(LOGIN_RATE)
async def login(
    request: Request,
    body: LoginRequest,
    db: AsyncSession = Depends(get_db),
    client: TelegramBotClient | None = Depends(get_bot_client),
) -> LoginResponse:
    """Check the password and send a login code to the linked Telegram chat.

    If the account has no Telegram yet, no code is sent and the response
    carries a bot deep link that links the account.
    """
    user = await _find_user(db, body.login)
    if user is None or not verify_password(body.password, user.hashed_password):
        logger.warning(
            "Failed login attempt",
            login=body.login,
            client_ip=_client_ip(request),
            reason="invalid_credentials",
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=INVALID_CREDENTIALS_DETAIL,
        )

    if user.is_blocked:
        logger.warning(
            "Failed login attempt",
            login=body.login,
            client_ip=_client_ip(request),
            reason=user.status.value,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is blocked",
        )

    language = normalize_language(body.language or user.language)

    if not user.telegram_id:
        bot_username = _bot_username(client)
        return LoginResponse(
            success=False,
            message="Connect Telegram to continue",
            telegram_required=True,
            bot_username=bot_username,
            bot_link=_bot_link(bot_username, "register", user.login, language),
        )

    try:
        await send_login_code(db, client, user, language=language)
    except VerificationStorageError as e:
        raise _storage_unavailable(e)
    except TelegramNotLinkedError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Telegram not linked")
    except DeliveryError as e:
        raise _delivery_http_error(e, client)

    logger.info(
        "Login code sent",
        user_id=str(user.id),
        client_ip=_client_ip(request),
    )
    return LoginResponse(
        success=True,
        message="Code sent to Telegram",
        expires_in=settings.verification_code_ttl_seconds,
    )


@router.post(
    "/verify-code",
    response_model=VerifyCodeResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid or expired code"},
        503: {"model": ErrorResponse, "description": "Store unavailable"},
    },
)
@limiter.limit(VERIFY_RATE)
async def verify_code(
    request: Request,
    body: VerifyCodeRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
) -> VerifyCodeResponse:
    """Exchange a login code for a session cookie."""
    user = await _find_user(db, body.login)
    if user is None or user.is_blocked:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=INVALID_CODE_DETAIL,
        )

    try:
        accepted = await validate_code(db, user.id, body.code, CodePurpose.LOGIN)
    except VerificationStorageError as e:
        raise _storage_unavailable(e)

    if not accepted:
        logger.warning(
            "Login code rejected",
            user_id=str(user.id),
            client_ip=_client_ip(request),
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=INVALID_CODE_DETAIL,
        )

    max_age = _set_session_cookie(response, user)
    user.last_login_at = datetime.now(UTC)
    await db.commit()

    logger.info(
        "User logged in successfully",
        user_id=str(user.id),
        client_ip=_client_ip(request),
    )
    return VerifyCodeResponse(
        user=UserResponse.model_validate(user),
        expires_in=max_age,
    )


@router.post(
    "/resend-code",
    response_model=ResendCodeResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Unknown login"},
        429: {"description": "Resend cooldown active"},
    },
)
@limiter.limit(RESEND_RATE)
async def resend_code(
    request: Request,
    body: ResendCodeRequest,
    db: AsyncSession = Depends(get_db),
    client: TelegramBotClient | None = Depends(get_bot_client),
) -> ResendCodeResponse:
    """Send a fresh login code, superseding the previous one."""
    user = await _find_user(db, body.login)
    if user is None or user.is_blocked:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=INVALID_CREDENTIALS_DETAIL,
        )

    language = normalize_language(body.language or user.language)
    try:
        await send_login_code(db, client, user, language=language, resend=True)
    except ResendCooldownError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "message": "Please wait before requesting a new code",
                "retry_after": e.retry_after_seconds,
            },
            headers={"Retry-After": str(e.retry_after_seconds)},
        )
    except VerificationStorageError as e:
        raise _storage_unavailable(e)
    except TelegramNotLinkedError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Telegram not linked")
    except DeliveryError as e:
        raise _delivery_http_error(e, client)

    return ResendCodeResponse(expires_in=settings.verification_code_ttl_seconds)


# ============================================================================
# Password recovery
# ============================================================================


@router.post("/forgot-password", response_model=ForgotPasswordResponse)
@limiter.limit(RECOVERY_RATE)
async def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    db: AsyncSession = Depends(get_db),
    client: TelegramBotClient | None = Depends(get_bot_client),
) -> ForgotPasswordResponse:
    """Send a recovery code over Telegram.

    The response is identical whether or not the login exists.
    """
    user = await _find_user(db, body.login)
    if user is None or user.is_blocked or not user.telegram_id:
        logger.info("Recovery requested for unusable account", login=body.login)
        return ForgotPasswordResponse()

    try:
        await send_recovery_code(db, client, user, resend=True)
    except VerificationStorageError as e:
        raise _storage_unavailable(e)
    except ResendCooldownError:
        logger.info("Recovery code resend throttled", user_id=str(user.id))
    except DeliveryError as e:
        logger.warning(
            "Recovery code not delivered",
            user_id=str(user.id),
            error=str(e),
        )

    return ForgotPasswordResponse()


@router.post(
    "/reset-password",
    response_model=VerifyCodeResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid or expired code"},
        422: {"model": ErrorResponse, "description": "Weak password"},
    },
)
@limiter.limit(RECOVERY_RATE)
async def reset_password(
    request: Request,
    body: ResetPasswordRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
) -> VerifyCodeResponse:
    """Set a new password with a recovery code and start a session."""
    is_valid, error = validate_password_strength(body.new_password)
    if not is_valid:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=error,
        )

    user = await _find_user(db, body.login)
    if user is None or user.is_blocked:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=INVALID_CODE_DETAIL,
        )

    try:
        accepted = await validate_code(db, user.id, body.code, CodePurpose.RECOVERY)
        if accepted:
            user.hashed_password = hash_password(body.new_password)
            user.last_login_at = datetime.now(UTC)
            await db.commit()
            await mark_code_used(db, user.id, CodePurpose.RECOVERY)
    except VerificationStorageError as e:
        raise _storage_unavailable(e)

    if not accepted:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=INVALID_CODE_DETAIL,
        )

    max_age = _set_session_cookie(response, user)
    logger.info("Password reset", user_id=str(user.id), client_ip=_client_ip(request))
    return VerifyCodeResponse(
        message="Password changed",
        user=UserResponse.model_validate(user),
        expires_in=max_age,
    )


# ============================================================================
# Session
# ============================================================================


@router.get(
    "/me",
    response_model=UserResponse,
    responses={401: {"model": ErrorResponse, "description": "Not authenticated"}},
)
async def get_current_user_info(current_user: CurrentUser) -> UserResponse:
    return UserResponse.model_validate(current_user)


@router.post("/logout", response_model=LogoutResponse)
async def logout(response: Response, current_user: CurrentUser) -> LogoutResponse:
    """Clear the session cookie."""
    response.delete_cookie(
        key=settings.jwt_cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )
    logger.info("User logged out", user_id=str(current_user.id))
    return LogoutResponse()
