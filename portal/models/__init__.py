# Database Models
from portal.models.base import Base, TimestampMixin
from portal.models.user import User, UserRole, UserStatus
from portal.models.verification_code import CodePurpose, CodeStatus, VerificationCode

__all__ = [
    "Base",
    "CodePurpose",
    "CodeStatus",
    "TimestampMixin",
    "User",
    "UserRole",
    "UserStatus",
    "VerificationCode",
]
