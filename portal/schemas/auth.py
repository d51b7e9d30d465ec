"""Authentication schemas.

Pydantic schemas for the two-step login (password, then Telegram code),
code resend and password recovery.
"""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from portal.models.user import UserRole, UserStatus

Language = Literal["ru", "kg", "ky"]


class UserResponse(BaseModel):
    """Public user information response."""

    model_config = {"from_attributes": True}

    id: uuid.UUID
    login: str
    name: str
    role: UserRole
    status: UserStatus
    telegram_username: str | None = None
    language: str
    last_login_at: datetime | None = None


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error message")


# ============================================================================
# Login
# ============================================================================


class LoginRequest(BaseModel):
    """Step one: login and password."""

    login: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=128)
    language: Language | None = None


class LoginResponse(BaseModel):
    """Outcome of step one.

    When ``telegram_required`` is set no code was sent; the user must first
    open ``bot_link`` and press Start.
    """

    success: bool
    message: str
    telegram_required: bool = False
    bot_username: str | None = None
    bot_link: str | None = None
    expires_in: int | None = Field(
        default=None, description="Seconds until the code expires"
    )


class VerifyCodeRequest(BaseModel):
    """Step two: the code received in Telegram."""

    login: str = Field(..., min_length=1, max_length=64)
    code: str = Field(..., min_length=1, max_length=16)


class VerifyCodeResponse(BaseModel):
    message: str = "Login successful"
    user: UserResponse
    expires_in: int = Field(..., description="Session lifetime in seconds")


class ResendCodeRequest(BaseModel):
    login: str = Field(..., min_length=1, max_length=64)
    language: Language | None = None


class ResendCodeResponse(BaseModel):
    success: bool = True
    message: str = "Code sent"
    expires_in: int


# ============================================================================
# Password recovery
# ============================================================================


class ForgotPasswordRequest(BaseModel):
    login: str = Field(..., min_length=1, max_length=64)


class ForgotPasswordResponse(BaseModel):
    """Always the same message, whether or not the login exists."""

    message: str = "If the account exists, a recovery code was sent to Telegram"


class ResetPasswordRequest(BaseModel):
    login: str = Field(..., min_length=1, max_length=64)
    code: str = Field(..., min_length=1, max_length=16)
    new_password: str = Field(..., min_length=1, max_length=128)
    confirm_password: str = Field(..., min_length=1, max_length=128)

    @model_validator(mode="after")
    def passwords_match(self) -> "ResetPasswordRequest":
        if self.new_password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class LogoutResponse(BaseModel):
    message: str = "Logged out"
