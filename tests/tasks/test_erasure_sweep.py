"""
Tests for the erasure sweep background task.

The sweep periodically erases users whose scheduled deletion date has
passed and expires stale recovery codes.

Test IDs: SWP-001 through SWP-007
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from erasure.models import UserAccount


class TestRunSweepOnce:
    """Tests for run_sweep_once (SWP-001 to SWP-003)."""

    @pytest.mark.asyncio
    async def test_sweep_erases_due_users_and_expires_codes(self, pipeline, user_factory, clock, db_session):
        """SWP-001: one run erases due users and expires old codes."""
        from erasure.tasks import run_sweep_once

        user_factory("user-due", "due@example.com")
        user_factory("user-later", "later@example.com")
        pipeline.schedule_deletion("user-due", clock.now + timedelta(hours=1))
        pipeline.schedule_deletion("user-later", clock.now + timedelta(days=10))
        pipeline.issue_recovery_code("user-later", "later@example.com")
        clock.advance(days=1)

        report = await run_sweep_once(pipeline)

        assert report.users_processed == 1
        assert report.users_fully_verified == 1
        assert report.codes_expired == 1
        assert db_session.get(UserAccount, "user-due") is None
        assert db_session.get(UserAccount, "user-later") is not None

    @pytest.mark.asyncio
    async def test_sweep_respects_batch_limit(self, pipeline, user_factory, clock):
        """SWP-002: at most batch_limit users are processed per run."""
        from erasure.tasks import run_sweep_once

        for i in range(3):
            user_factory(f"user-{i}", f"u{i}@example.com")
            pipeline.schedule_deletion(f"user-{i}", clock.now - timedelta(minutes=i + 1))

        first = await run_sweep_once(pipeline, batch_limit=2)
        second = await run_sweep_once(pipeline, batch_limit=2)

        assert first.users_processed == 2
        assert second.users_processed == 1
        assert pipeline.list_expired_scheduled() == []

    @pytest.mark.asyncio
    async def test_incomplete_erasure_is_reported(self, pipeline, seeded_user, clock, s3):
        """SWP-003: a run with a failing subsystem is counted but not verified."""
        from erasure.tasks import run_sweep_once

        pipeline.schedule_deletion("user-123", clock.now)
        s3.fail_deletes = True

        report = await run_sweep_once(pipeline)

        assert report.users_processed == 1
        assert report.users_fully_verified == 0


class TestErasureSweepScheduler:
    """Tests for ErasureSweepScheduler (SWP-004 to SWP-007)."""

    def test_interval_from_environment(self):
        """SWP-004: interval comes from SWEEP_INTERVAL_SECONDS, bad values fall back."""
        from erasure.tasks.erasure_sweep import get_sweep_interval

        with patch.dict("os.environ", {"SWEEP_INTERVAL_SECONDS": "60"}):
            assert get_sweep_interval() == 60
        with patch.dict("os.environ", {"SWEEP_INTERVAL_SECONDS": "soon"}):
            assert get_sweep_interval() == 3600

    @pytest.mark.asyncio
    async def test_run_once_closes_session(self, pipeline):
        """SWP-005: each run opens a session and always closes it."""
        from erasure.tasks import ErasureSweepScheduler

        session = MagicMock()
        scheduler = ErasureSweepScheduler(
            session_factory=lambda: session,
            pipeline_factory=lambda db: pipeline,
            interval_seconds=60,
        )

        report = await scheduler.run_once()

        assert report.users_processed == 0
        session.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_run_once_propagates_errors(self):
        """SWP-006: a failing run raises after closing its session."""
        from erasure.tasks import ErasureSweepScheduler

        session = MagicMock()
        broken = MagicMock()
        broken.cleanup_expired_codes.side_effect = RuntimeError("db down")
        scheduler = ErasureSweepScheduler(
            session_factory=lambda: session,
            pipeline_factory=lambda db: broken,
            interval_seconds=60,
        )

        with pytest.raises(RuntimeError):
            await scheduler.run_once()
        session.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        """SWP-007: the loop survives a failing run and stops cleanly."""
        from erasure.tasks import ErasureSweepScheduler

        scheduler = ErasureSweepScheduler(
            session_factory=MagicMock,
            pipeline_factory=lambda db: MagicMock(),
            interval_seconds=3600,
        )

        with patch.object(scheduler, "run_once", AsyncMock(side_effect=RuntimeError("boom"))) as run_once:
            await scheduler.start()
            assert scheduler.running is True
            await asyncio.sleep(0.01)
            await scheduler.stop()

        assert scheduler.running is False
        run_once.assert_awaited_once()
