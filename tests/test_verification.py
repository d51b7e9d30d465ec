"""Verification code store tests.

Issue, validate, supersede, expiry, single use under concurrency, resend
cooldown and purge, against a real (SQLite) database.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from portal.config import settings
from portal.database import get_session_maker
from portal.models import CodePurpose, CodeStatus, VerificationCode
from portal.services.verification import (
    ResendCooldownError,
    VerificationStorageError,
    _generate_code,
    _normalize_code,
    get_resend_cooldown,
    issue_code,
    mark_code_used,
    purge_stale_codes,
    resend_code,
    validate_code,
)

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def at(seconds: float):
    """Freeze the store's clock at T0 + ``seconds``."""
    return patch(
        "portal.services.verification._utcnow",
        return_value=T0 + timedelta(seconds=seconds),
    )


def fixed_codes(*codes: str):
    return patch("portal.services.verification._generate_code", side_effect=list(codes))


async def count_codes(db, user_id, status: CodeStatus) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(VerificationCode)
        .where(VerificationCode.user_id == user_id, VerificationCode.status == status)
    )
    return result.scalar_one()


# ---------------------------------------------------------------------------
# Code format
# ---------------------------------------------------------------------------
class TestCodeFormat:
    def test_generated_code_is_six_digits(self):
        for _ in range(50):
            code = _generate_code()
            assert len(code) == settings.verification_code_length
            assert code.isdigit()

    def test_generated_code_keeps_leading_zeros(self):
        with patch("portal.services.verification.secrets.randbelow", return_value=42):
            assert _generate_code() == "000042"

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("123456", "123456"),
            (" 123 456 ", "123456"),
            ("12345", None),
            ("1234567", None),
            ("12a456", None),
            ("", None),
            (None, None),
        ],
    )
    def test_normalize_code(self, raw, expected):
        assert _normalize_code(raw) == expected


# ---------------------------------------------------------------------------
# Issue / validate
# ---------------------------------------------------------------------------
class TestIssueAndValidate:
    async def test_issued_code_validates_once(self, db_session, make_user):
        user = await make_user()
        code = await issue_code(db_session, user.id, CodePurpose.LOGIN)

        assert await validate_code(db_session, user.id, code, CodePurpose.LOGIN) is True
        assert await validate_code(db_session, user.id, code, CodePurpose.LOGIN) is False
        assert await count_codes(db_session, user.id, CodeStatus.USED) == 1

    async def test_plaintext_code_is_not_stored(self, db_session, make_user):
        user = await make_user()
        with fixed_codes("482913"):
            await issue_code(db_session, user.id, CodePurpose.LOGIN)

        row = (await db_session.execute(select(VerificationCode))).scalar_one()
        assert row.code_hash != "482913"
        assert len(row.code_hash) == 64

    async def test_wrong_code_then_right_code(self, db_session, make_user):
        user = await make_user()
        with fixed_codes("482913"):
            await issue_code(db_session, user.id, CodePurpose.LOGIN)

        assert await validate_code(db_session, user.id, "000000", CodePurpose.LOGIN) is False
        assert await validate_code(db_session, user.id, "482913", CodePurpose.LOGIN) is True
        assert await validate_code(db_session, user.id, "482913", CodePurpose.LOGIN) is False

    async def test_whitespace_in_submitted_code_is_ignored(self, db_session, make_user):
        user = await make_user()
        with fixed_codes("123456"):
            await issue_code(db_session, user.id, CodePurpose.LOGIN)

        assert await validate_code(db_session, user.id, " 123 456", CodePurpose.LOGIN) is True

    async def test_malformed_code_is_rejected(self, db_session, make_user):
        user = await make_user()
        await issue_code(db_session, user.id, CodePurpose.LOGIN)

        for bad in ("", "abc", "12345", None):
            assert await validate_code(db_session, user.id, bad, CodePurpose.LOGIN) is False
        assert await count_codes(db_session, user.id, CodeStatus.ACTIVE) == 1

    async def test_no_active_code(self, db_session, make_user):
        user = await make_user()
        assert await validate_code(db_session, user.id, "123456", CodePurpose.LOGIN) is False

    async def test_purpose_is_part_of_the_key(self, db_session, make_user):
        user = await make_user()
        with fixed_codes("555555"):
            await issue_code(db_session, user.id, CodePurpose.LOGIN)

        assert await validate_code(db_session, user.id, "555555", CodePurpose.RECOVERY) is False
        assert await validate_code(db_session, user.id, "555555", CodePurpose.LOGIN) is True

    async def test_code_is_bound_to_its_user(self, db_session, make_user):
        alice = await make_user("alice")
        bob = await make_user("bob")
        with fixed_codes("777777"):
            await issue_code(db_session, alice.id, CodePurpose.LOGIN)

        assert await validate_code(db_session, bob.id, "777777", CodePurpose.LOGIN) is False
        assert await validate_code(db_session, alice.id, "777777", CodePurpose.LOGIN) is True


class TestSupersede:
    async def test_new_code_supersedes_previous(self, db_session, make_user):
        user = await make_user()
        with fixed_codes("111111", "222222"):
            first = await issue_code(db_session, user.id, CodePurpose.LOGIN)
            second = await issue_code(db_session, user.id, CodePurpose.LOGIN)

        assert await validate_code(db_session, user.id, first, CodePurpose.LOGIN) is False
        assert await validate_code(db_session, user.id, second, CodePurpose.LOGIN) is True

    async def test_at_most_one_active_code_per_purpose(self, db_session, make_user):
        user = await make_user()
        for _ in range(3):
            await issue_code(db_session, user.id, CodePurpose.LOGIN)
        await issue_code(db_session, user.id, CodePurpose.RECOVERY)

        result = await db_session.execute(
            select(VerificationCode.purpose, func.count())
            .where(
                VerificationCode.user_id == user.id,
                VerificationCode.status == CodeStatus.ACTIVE,
            )
            .group_by(VerificationCode.purpose)
        )
        assert dict(result.all()) == {CodePurpose.LOGIN: 1, CodePurpose.RECOVERY: 1}
        assert await count_codes(db_session, user.id, CodeStatus.EXPIRED) == 2

    async def test_recovery_code_does_not_supersede_login_code(self, db_session, make_user):
        user = await make_user()
        with fixed_codes("111111", "222222"):
            login_code = await issue_code(db_session, user.id, CodePurpose.LOGIN)
            await issue_code(db_session, user.id, CodePurpose.RECOVERY)

        assert await validate_code(db_session, user.id, login_code, CodePurpose.LOGIN) is True


class TestExpiry:
    async def test_valid_just_before_ttl(self, db_session, make_user):
        user = await make_user()
        with at(0), fixed_codes("123456"):
            await issue_code(db_session, user.id, CodePurpose.LOGIN)
        with at(settings.verification_code_ttl_seconds - 1):
            assert await validate_code(db_session, user.id, "123456", CodePurpose.LOGIN) is True

    async def test_rejected_after_ttl(self, db_session, make_user):
        user = await make_user()
        with at(0), fixed_codes("123456"):
            await issue_code(db_session, user.id, CodePurpose.LOGIN)
        with at(settings.verification_code_ttl_seconds + 1):
            assert await validate_code(db_session, user.id, "123456", CodePurpose.LOGIN) is False

    async def test_late_attempt_does_not_consume_code(self, db_session, make_user):
        user = await make_user()
        with at(0), fixed_codes("123456"):
            await issue_code(db_session, user.id, CodePurpose.LOGIN)
        with at(settings.verification_code_ttl_seconds + 1):
            await validate_code(db_session, user.id, "123456", CodePurpose.LOGIN)
        with at(10):
            assert await validate_code(db_session, user.id, "123456", CodePurpose.LOGIN) is True


class TestConcurrentValidation:
    async def test_exactly_one_concurrent_validation_succeeds(self, db_session, make_user):
        user = await make_user()
        code = await issue_code(db_session, user.id, CodePurpose.LOGIN)
        maker = get_session_maker()

        async def attempt() -> bool:
            async with maker() as session:
                return await validate_code(session, user.id, code, CodePurpose.LOGIN)

        results = await asyncio.gather(*(attempt() for _ in range(5)))

        assert results.count(True) == 1
        assert results.count(False) == 4


class TestScenario:
    async def test_issue_wrong_right_reuse(self, db_session, make_user):
        user = await make_user()
        with at(0), fixed_codes("314159"):
            code = await issue_code(db_session, user.id, CodePurpose.LOGIN)
        with at(30):
            assert await validate_code(db_session, user.id, "271828", CodePurpose.LOGIN) is False
            assert await validate_code(db_session, user.id, code, CodePurpose.LOGIN) is True
            assert await validate_code(db_session, user.id, code, CodePurpose.LOGIN) is False

    async def test_expire_resend_validate_reuse(self, db_session, make_user):
        user = await make_user()
        with at(0), fixed_codes("482913"):
            await issue_code(db_session, user.id, CodePurpose.LOGIN)

        with at(301):
            assert await validate_code(db_session, user.id, "482913", CodePurpose.LOGIN) is False
            with fixed_codes("118204"):
                assert await resend_code(db_session, user.id, CodePurpose.LOGIN) == "118204"

        with at(311):
            assert await validate_code(db_session, user.id, "118204", CodePurpose.LOGIN) is True
            assert await validate_code(db_session, user.id, "118204", CodePurpose.LOGIN) is False


class TestAttemptLimit:
    async def attempts_and_status(self, db, user_id):
        result = await db.execute(
            select(VerificationCode.failed_attempts, VerificationCode.status).where(
                VerificationCode.user_id == user_id
            )
        )
        return result.one()

    async def test_code_locked_after_max_failures(self, db_session, make_user):
        user = await make_user()
        with fixed_codes("482913"):
            await issue_code(db_session, user.id, CodePurpose.LOGIN)

        for _ in range(settings.verification_max_attempts):
            assert await validate_code(db_session, user.id, "000000", CodePurpose.LOGIN) is False

        assert await validate_code(db_session, user.id, "482913", CodePurpose.LOGIN) is False
        attempts, status = await self.attempts_and_status(db_session, user.id)
        assert attempts == settings.verification_max_attempts
        assert status == CodeStatus.EXPIRED

    async def test_right_code_accepted_below_limit(self, db_session, make_user):
        user = await make_user()
        with fixed_codes("482913"):
            await issue_code(db_session, user.id, CodePurpose.LOGIN)

        for _ in range(settings.verification_max_attempts - 1):
            await validate_code(db_session, user.id, "000000", CodePurpose.LOGIN)

        assert await validate_code(db_session, user.id, "482913", CodePurpose.LOGIN) is True

    async def test_failures_count_per_purpose(self, db_session, make_user):
        user = await make_user()
        with fixed_codes("482913"):
            await issue_code(db_session, user.id, CodePurpose.LOGIN)

        for _ in range(settings.verification_max_attempts):
            await validate_code(db_session, user.id, "000000", CodePurpose.RECOVERY)

        assert await validate_code(db_session, user.id, "482913", CodePurpose.LOGIN) is True

    async def test_new_code_starts_with_fresh_budget(self, db_session, make_user):
        user = await make_user()
        with fixed_codes("482913", "271828"):
            await issue_code(db_session, user.id, CodePurpose.LOGIN)
            for _ in range(settings.verification_max_attempts):
                await validate_code(db_session, user.id, "000000", CodePurpose.LOGIN)
            await issue_code(db_session, user.id, CodePurpose.LOGIN)

        assert await validate_code(db_session, user.id, "271828", CodePurpose.LOGIN) is True


# ---------------------------------------------------------------------------
# mark_used / resend / purge
# ---------------------------------------------------------------------------
class TestMarkUsed:
    async def test_mark_used_invalidates_active_code(self, db_session, make_user):
        user = await make_user()
        code = await issue_code(db_session, user.id, CodePurpose.RECOVERY)

        assert await mark_code_used(db_session, user.id, CodePurpose.RECOVERY) == 1
        assert await validate_code(db_session, user.id, code, CodePurpose.RECOVERY) is False

    async def test_mark_used_only_touches_its_purpose(self, db_session, make_user):
        user = await make_user()
        login_code = await issue_code(db_session, user.id, CodePurpose.LOGIN)

        assert await mark_code_used(db_session, user.id, CodePurpose.RECOVERY) == 0
        assert await validate_code(db_session, user.id, login_code, CodePurpose.LOGIN) is True


class TestResend:
    async def test_cooldown_blocks_early_resend(self, db_session, make_user):
        user = await make_user()
        with at(0):
            await issue_code(db_session, user.id, CodePurpose.LOGIN)
        with at(10):
            remaining = await get_resend_cooldown(db_session, user.id, CodePurpose.LOGIN)
            assert remaining == settings.verification_resend_cooldown_seconds - 10
            with pytest.raises(ResendCooldownError) as exc_info:
                await resend_code(db_session, user.id, CodePurpose.LOGIN)
        assert exc_info.value.retry_after_seconds == remaining

    async def test_resend_after_cooldown_supersedes(self, db_session, make_user):
        user = await make_user()
        with at(0), fixed_codes("111111"):
            first = await issue_code(db_session, user.id, CodePurpose.LOGIN)
        with at(settings.verification_resend_cooldown_seconds), fixed_codes("222222"):
            assert await get_resend_cooldown(db_session, user.id, CodePurpose.LOGIN) == 0
            second = await resend_code(db_session, user.id, CodePurpose.LOGIN)
            assert await validate_code(db_session, user.id, first, CodePurpose.LOGIN) is False
            assert await validate_code(db_session, user.id, second, CodePurpose.LOGIN) is True

    async def test_no_cooldown_without_prior_code(self, db_session, make_user):
        user = await make_user()
        assert await get_resend_cooldown(db_session, user.id, CodePurpose.RECOVERY) == 0


class TestPurge:
    async def test_purge_removes_only_old_rows(self, db_session, make_user):
        user = await make_user()
        with at(0):
            await issue_code(db_session, user.id, CodePurpose.LOGIN)
        with at(3600):
            await issue_code(db_session, user.id, CodePurpose.LOGIN)

        deleted = await purge_stale_codes(db_session, T0 + timedelta(minutes=30))

        assert deleted == 1
        remaining = (await db_session.execute(select(VerificationCode))).scalars().all()
        assert len(remaining) == 1
        assert remaining[0].status == CodeStatus.ACTIVE


class TestStorageErrors:
    def _broken_session(self):
        db = AsyncMock()
        db.execute.side_effect = OperationalError("UPDATE", {}, Exception("db down"))
        return db

    async def test_issue_raises_storage_error(self, make_user):
        user = await make_user()
        db = self._broken_session()
        with pytest.raises(VerificationStorageError):
            await issue_code(db, user.id, CodePurpose.LOGIN)
        db.rollback.assert_awaited()

    async def test_validate_raises_storage_error(self, make_user):
        user = await make_user()
        with pytest.raises(VerificationStorageError):
            await validate_code(self._broken_session(), user.id, "123456", CodePurpose.LOGIN)

    async def test_mark_used_raises_storage_error(self, make_user):
        user = await make_user()
        with pytest.raises(VerificationStorageError):
            await mark_code_used(self._broken_session(), user.id, CodePurpose.LOGIN)
