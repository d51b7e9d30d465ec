"""One-time verification code store.

Issues, validates and invalidates the numeric codes used for the
Telegram two-factor login and for password recovery.

Codes are bound to a (user, purpose) pair. Issuing a code supersedes any
earlier active code for the same pair, and a code validates at most once:
consumption is a single conditional UPDATE whose affected-row count decides
the outcome, so concurrent submissions of the same code yield exactly one
success.
"""

import hashlib
import hmac
import math
import secrets
import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import case, delete, func, literal, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from portal.config import settings
from portal.logging_config import get_logger
from portal.models.verification_code import CodePurpose, CodeStatus, VerificationCode

logger = get_logger(__name__)


class VerificationStorageError(Exception):
    """The verification code store could not be reached or updated."""


class ResendCooldownError(Exception):
    """A new code was requested before the resend cooldown elapsed."""

    def __init__(self, retry_after_seconds: int):
        super().__init__(f"Retry after {retry_after_seconds} seconds")
        self.retry_after_seconds = retry_after_seconds


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timezone-aware columns back naive
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _generate_code(length: int | None = None) -> str:
    """Generate a uniformly random numeric code, zero-padded to ``length``."""
    length = length or settings.verification_code_length
    return f"{secrets.randbelow(10**length):0{length}d}"


def _hash_code(user_id: uuid.UUID, purpose: CodePurpose, code: str) -> str:
    """Keyed hash of a code, scoped to its owner and purpose."""
    message = f"{user_id}:{purpose.value}:{code}".encode()
    return hmac.new(settings.secret_key.encode(), message, hashlib.sha256).hexdigest()


def _normalize_code(code: str | None) -> str | None:
    """Strip whitespace; return None if the result cannot be a valid code."""
    if not code:
        return None
    normalized = "".join(code.split())
    if len(normalized) != settings.verification_code_length or not normalized.isdigit():
        return None
    return normalized


async def _rollback_quietly(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except SQLAlchemyError:
        logger.warning("Rollback failed after storage error", exc_info=True)


async def issue_code(
    db: AsyncSession,
    user_id: uuid.UUID,
    purpose: CodePurpose,
) -> str:
    """Issue a new code for a user and purpose.

    Any previously active code for the same pair is marked expired in the
    same transaction.

    Args:
        db: Database session.
        user_id: Owner of the code.
        purpose: LOGIN or RECOVERY.

    Returns:
        The plaintext code. The caller is responsible for delivering it.

    Raises:
        VerificationStorageError: If the code could not be persisted.
    """
    now = _utcnow()
    code = _generate_code()

    try:
        await db.execute(
            update(VerificationCode)
            .where(
                VerificationCode.user_id == user_id,
                VerificationCode.purpose == purpose,
                VerificationCode.status == CodeStatus.ACTIVE,
            )
            .values(status=CodeStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        db.add(
            VerificationCode(
                user_id=user_id,
                purpose=purpose,
                code_hash=_hash_code(user_id, purpose, code),
                status=CodeStatus.ACTIVE,
                issued_at=now,
            )
        )
        await db.commit()
    except SQLAlchemyError as e:
        await _rollback_quietly(db)
        logger.error(
            "Failed to store verification code",
            user_id=str(user_id),
            purpose=purpose.value,
            error=str(e),
        )
        raise VerificationStorageError("Verification code store unavailable") from e

    logger.info(
        "Verification code issued",
        user_id=str(user_id),
        purpose=purpose.value,
        ttl_seconds=settings.verification_code_ttl_seconds,
    )
    return code


async def validate_code(
    db: AsyncSession,
    user_id: uuid.UUID,
    code: str | None,
    purpose: CodePurpose,
) -> bool:
    """Check a submitted code and consume it on success.

    Returns False, without distinguishing why, when there is no active
    code, the code does not match, it belongs to another purpose, or it is
    older than the TTL. Each rejection counts against the active code, which
    is expired after ``verification_max_attempts`` failures.

    Raises:
        VerificationStorageError: If the store cannot be reached.
    """
    normalized = _normalize_code(code)
    if normalized is None:
        return False

    now = _utcnow()
    cutoff = now - timedelta(seconds=settings.verification_code_ttl_seconds)

    try:
        result = await db.execute(
            update(VerificationCode)
            .where(
                VerificationCode.user_id == user_id,
                VerificationCode.purpose == purpose,
                VerificationCode.status == CodeStatus.ACTIVE,
                VerificationCode.code_hash == _hash_code(user_id, purpose, normalized),
                VerificationCode.issued_at >= cutoff,
            )
            .values(status=CodeStatus.USED, used_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as e:
        await _rollback_quietly(db)
        logger.error(
            "Failed to validate verification code",
            user_id=str(user_id),
            purpose=purpose.value,
            error=str(e),
        )
        raise VerificationStorageError("Verification code store unavailable") from e

    consumed = result.rowcount == 1
    if consumed:
        logger.info(
            "Verification code accepted",
            user_id=str(user_id),
            purpose=purpose.value,
        )
    else:
        await _record_failed_attempt(db, user_id, purpose, cutoff)
    return consumed


async def _record_failed_attempt(
    db: AsyncSession,
    user_id: uuid.UUID,
    purpose: CodePurpose,
    cutoff: datetime,
) -> None:
    """Count a rejected submission against the active code.

    The code is expired once it reaches ``verification_max_attempts``
    failures, so the right code no longer validates after that.
    """
    max_attempts = settings.verification_max_attempts
    try:
        result = await db.execute(
            update(VerificationCode)
            .where(
                VerificationCode.user_id == user_id,
                VerificationCode.purpose == purpose,
                VerificationCode.status == CodeStatus.ACTIVE,
                VerificationCode.issued_at >= cutoff,
            )
            .values(
                failed_attempts=VerificationCode.failed_attempts + 1,
                status=case(
                    (
                        VerificationCode.failed_attempts + 1 >= max_attempts,
                        literal(CodeStatus.EXPIRED, VerificationCode.__table__.c.status.type),
                    ),
                    else_=VerificationCode.status,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as e:
        await _rollback_quietly(db)
        raise VerificationStorageError("Verification code store unavailable") from e

    logger.debug(
        "Verification code rejected",
        user_id=str(user_id),
        purpose=purpose.value,
        counted=result.rowcount == 1,
    )


async def mark_code_used(
    db: AsyncSession,
    user_id: uuid.UUID,
    purpose: CodePurpose,
) -> int:
    """Invalidate every active code for a user and purpose without checking it.

    Returns:
        Number of codes invalidated.

    Raises:
        VerificationStorageError: If the store cannot be reached.
    """
    try:
        result = await db.execute(
            update(VerificationCode)
            .where(
                VerificationCode.user_id == user_id,
                VerificationCode.purpose == purpose,
                VerificationCode.status == CodeStatus.ACTIVE,
            )
            .values(status=CodeStatus.USED, used_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as e:
        await _rollback_quietly(db)
        raise VerificationStorageError("Verification code store unavailable") from e

    if result.rowcount:
        logger.info(
            "Verification codes invalidated",
            user_id=str(user_id),
            purpose=purpose.value,
            count=result.rowcount,
        )
    return result.rowcount


async def get_resend_cooldown(
    db: AsyncSession,
    user_id: uuid.UUID,
    purpose: CodePurpose,
) -> int:
    """Seconds left before another code may be requested (0 if allowed now)."""
    try:
        result = await db.execute(
            select(func.max(VerificationCode.issued_at)).where(
                VerificationCode.user_id == user_id,
                VerificationCode.purpose == purpose,
            )
        )
        last_issued = result.scalar_one_or_none()
    except SQLAlchemyError as e:
        await _rollback_quietly(db)
        raise VerificationStorageError("Verification code store unavailable") from e

    if last_issued is None:
        return 0

    elapsed = (_utcnow() - _as_utc(last_issued)).total_seconds()
    remaining = settings.verification_resend_cooldown_seconds - elapsed
    return max(0, math.ceil(remaining))


async def resend_code(
    db: AsyncSession,
    user_id: uuid.UUID,
    purpose: CodePurpose,
) -> str:
    """Issue a replacement code, honouring the resend cooldown.

    Raises:
        ResendCooldownError: If the previous code is too recent.
        VerificationStorageError: If the store cannot be reached.
    """
    remaining = await get_resend_cooldown(db, user_id, purpose)
    if remaining > 0:
        logger.info(
            "Verification code resend throttled",
            user_id=str(user_id),
            purpose=purpose.value,
            retry_after=remaining,
        )
        raise ResendCooldownError(remaining)

    return await issue_code(db, user_id, purpose)


async def purge_stale_codes(db: AsyncSession, older_than: datetime) -> int:
    """Delete code rows issued before ``older_than``.

    Expiry does not depend on this; it only keeps the table small.
    """
    try:
        result = await db.execute(
            delete(VerificationCode)
            .where(VerificationCode.issued_at < older_than)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as e:
        await _rollback_quietly(db)
        raise VerificationStorageError("Verification code store unavailable") from e

    return result.rowcount
