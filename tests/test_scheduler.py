"""Background scheduler tests."""

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from portal.config import settings
from portal.models import CodePurpose, VerificationCode
from portal.services import scheduler as scheduler_module
from portal.services.scheduler import (
    get_scheduler,
    purge_verification_codes,
    start_scheduler,
    stop_scheduler,
)
from portal.services.verification import issue_code


class TestPurgeJob:
    async def test_purges_rows_past_retention(self, db_session, make_user):
        user = await make_user()
        old = datetime.now(UTC) - timedelta(hours=settings.verification_retention_hours + 1)
        with patch("portal.services.verification._utcnow", return_value=old):
            await issue_code(db_session, user.id, CodePurpose.LOGIN)
        await issue_code(db_session, user.id, CodePurpose.LOGIN)

        assert await purge_verification_codes() == 1

        rows = (await db_session.execute(select(VerificationCode))).scalars().all()
        assert len(rows) == 1

    async def test_nothing_to_purge(self):
        assert await purge_verification_codes() == 0


class TestSchedulerLifecycle:
    @pytest.fixture(autouse=True)
    def _reset(self):
        yield
        stop_scheduler()

    async def test_registers_purge_job(self):
        sched = start_scheduler()

        assert get_scheduler() is sched
        job = sched.get_job("verification_code_purge")
        assert job is not None
        assert job.max_instances == 1

    async def test_start_twice_returns_same_scheduler(self):
        assert start_scheduler() is start_scheduler()

    async def test_purge_disabled(self, monkeypatch):
        monkeypatch.setattr(settings, "verification_purge_enabled", False)
        sched = start_scheduler()
        assert sched.get_job("verification_code_purge") is None

    async def test_stop_clears_instance(self):
        start_scheduler()
        stop_scheduler()
        assert scheduler_module.scheduler is None
