"""One-time verification code model.

Short-lived numeric codes for two-factor login and password recovery.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from portal.models.base import Base


class CodePurpose(str, enum.Enum):
    """What a verification code unlocks."""

    LOGIN = "login"
    RECOVERY = "recovery"


class CodeStatus(str, enum.Enum):
    """Persisted code state.

    EXPIRED is written when a newer code supersedes this one. A code
    past its TTL is treated as expired whatever its stored status.
    """

    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


class VerificationCode(Base):
    """A single issued verification code.

    Only a keyed hash of the code is stored. At most one ACTIVE row
    exists per (user_id, purpose).
    """

    __tablename__ = "verification_codes"
    __table_args__ = (
        Index(
            "ix_verification_codes_user_purpose_status",
            "user_id",
            "purpose",
            "status",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    purpose: Mapped[CodePurpose] = mapped_column(
        Enum(
            CodePurpose,
            name="codepurpose",
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )

    code_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    status: Mapped[CodeStatus] = mapped_column(
        Enum(
            CodeStatus,
            name="codestatus",
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=CodeStatus.ACTIVE,
    )

    failed_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )

    issued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    user = relationship("User", back_populates="verification_codes")

    def __repr__(self) -> str:
        return (
            f"<VerificationCode(user_id={self.user_id}, "
            f"purpose={self.purpose.value}, status={self.status.value})>"
        )
