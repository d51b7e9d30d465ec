"""User model.

Portal accounts. Teachers sign in with login + password and a second
factor delivered through the linked Telegram chat.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from portal.models.base import Base, TimestampMixin


class UserRole(str, enum.Enum):
    """User roles.

    - TEACHER: Portal user, signs in with Telegram two-factor codes
    - ADMIN: Can control the Telegram bot from the admin panel
    """

    TEACHER = "teacher"
    ADMIN = "admin"


class UserStatus(str, enum.Enum):
    """Account moderation status."""

    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    BANNED = "banned"
    DELETED = "deleted"


class User(Base, TimestampMixin):
    """User account model.

    Attributes:
        id: Unique user identifier (UUID)
        login: Unique login name, also used in Telegram deep links
        name: Display name used in bot messages
        hashed_password: Bcrypt-hashed password
        role: User role (teacher, admin)
        status: Moderation status
        telegram_id: Linked Telegram user/chat id (string form)
        telegram_username: Telegram @username, refreshed on every contact
        language: Preferred bot language ('ru' or 'kg')
        last_login_at: Timestamp of last completed two-factor login
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    login: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )
    hashed_password: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    role: Mapped[UserRole] = mapped_column(
        Enum(
            UserRole,
            name="userrole",
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=UserRole.TEACHER,
    )
    status: Mapped[UserStatus] = mapped_column(
        Enum(
            UserStatus,
            name="userstatus",
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=UserStatus.UNVERIFIED,
    )
    telegram_id: Mapped[str | None] = mapped_column(
        String(32),
        unique=True,
        nullable=True,
    )
    telegram_username: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    language: Mapped[str] = mapped_column(
        String(2),
        nullable=False,
        default="ru",
    )
    last_login_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    verification_codes = relationship(
        "VerificationCode",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_blocked(self) -> bool:
        return self.status in (UserStatus.BANNED, UserStatus.DELETED)

    def __repr__(self) -> str:
        return f"<User {self.login} ({self.role.value})>"
