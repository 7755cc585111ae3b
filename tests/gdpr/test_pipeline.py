"""End-to-end tests for ErasurePipeline.

Test IDs: PIPE-001 through PIPE-015
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from erasure.models import DeletionRequest, TrainingSession, UserAccount


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def notifying_pipeline(db_session, settings, s3, warehouse_engine, identity, clock, notifier):
    from erasure.gdpr.pipeline import ErasurePipeline

    return ErasurePipeline.from_settings(
        db_session,
        settings,
        s3_client=s3,
        warehouse_engine=warehouse_engine,
        identity_http=identity.client(),
        notifier=notifier,
        clock=clock,
    )


def _sent_code(notifier) -> str:
    email, code, expires_at = notifier.send_recovery_code.call_args[0]
    return code


class TestRecoveryFlow:
    """Tests for the recovery path (PIPE-001 to PIPE-005)."""

    @pytest.mark.asyncio
    async def test_recovered_user_is_not_erased(self, notifying_pipeline, notifier, seeded_user, clock, db_session, identity):
        """PIPE-001: request, recover with the emailed code, sweep finds nothing."""
        pipeline = notifying_pipeline
        request = pipeline.request_deletion("user-123", "soft", reason="moving on")

        assert pipeline.request_recovery_code("ALICE@example.com", ip_address="198.51.100.4") is True
        notifier.send_recovery_code.assert_called_once()
        result = pipeline.execute_recovery("alice@example.com", _sent_code(notifier))

        assert result.success is True
        assert result.deletion_request_id == request.request_id
        status = pipeline.get_deletion_status("user-123")
        assert status.deletion_scheduled is False
        assert status.request_id is None
        assert db_session.get(DeletionRequest, request.request_id).status == "cancelled"

        clock.advance(days=31)
        assert await pipeline.process_expired() == []
        assert db_session.get(UserAccount, "user-123") is not None
        assert "user-123" in identity.users

    def test_hard_request_gets_no_code(self, notifying_pipeline, notifier, seeded_user):
        """PIPE-002: hard deletions cannot be recovered, so no code is sent."""
        notifying_pipeline.request_deletion("user-123", "hard")

        assert notifying_pipeline.request_recovery_code("alice@example.com") is False
        notifier.send_recovery_code.assert_not_called()

    def test_unknown_email_gets_no_code(self, notifying_pipeline, notifier, seeded_user):
        """PIPE-003: an unscheduled or unknown email issues nothing."""
        assert notifying_pipeline.request_recovery_code("alice@example.com") is False
        assert notifying_pipeline.request_recovery_code("bob@example.com") is False
        notifier.send_recovery_code.assert_not_called()

    def test_delivery_failure_keeps_code(self, notifying_pipeline, notifier, seeded_user, db_session):
        """PIPE-004: a failing notifier does not undo the issued code."""
        from erasure.models import RecoveryCode

        notifying_pipeline.request_deletion("user-123", "soft")
        notifier.send_recovery_code.side_effect = ConnectionError("smtp down")

        assert notifying_pipeline.request_recovery_code("alice@example.com") is True
        assert db_session.query(RecoveryCode).filter(RecoveryCode.status == "pending").count() == 1

    def test_recovery_after_deadline_fails(self, notifying_pipeline, notifier, seeded_user, clock):
        """PIPE-005: a code issued in time cannot be used once the window closes."""
        notifying_pipeline.request_deletion("user-123", "soft")
        clock.advance(days=30, hours=-1, minutes=-30)
        assert notifying_pipeline.request_recovery_code("alice@example.com") is True
        code = _sent_code(notifier)

        # The code is still within its TTL but the recovery deadline has passed
        clock.advance(hours=1)

        assert notifying_pipeline.execute_recovery("alice@example.com", code).success is False


class TestSweepFlow:
    """Tests for processing expired schedules (PIPE-006 to PIPE-010)."""

    @pytest.mark.asyncio
    async def test_expired_user_is_erased_and_certified(self, pipeline, seeded_user, clock, db_session, hasher):
        """PIPE-006: a scheduled user past their date is erased end to end."""
        pipeline.schedule_deletion("user-123", clock.now + timedelta(days=30))
        clock.advance(days=30)

        results = await pipeline.process_expired()

        assert len(results) == 1
        result = results[0]
        assert result.success is True
        request = db_session.get(DeletionRequest, result.deletion_request_id)
        assert request.status == "completed"
        assert request.deletion_verified is True
        assert request.certificate_id == result.certificate.certificate_id
        assert request.deletion_type == "hard"
        assert pipeline.list_expired_scheduled() == []

        certificates = pipeline.find_certificates_by_user_hash(hasher.user_hash("user-123"))
        assert [c.certificate_id for c in certificates] == [result.certificate.certificate_id]

    @pytest.mark.asyncio
    async def test_not_yet_due_user_is_left_alone(self, pipeline, seeded_user, clock, db_session):
        """PIPE-007: a user whose date is in the future is not touched."""
        pipeline.request_deletion("user-123", "soft")
        clock.advance(days=29)

        assert await pipeline.process_expired() == []
        assert db_session.get(UserAccount, "user-123") is not None

    @pytest.mark.asyncio
    async def test_failed_subsystem_still_completes_request(self, pipeline, seeded_user, clock, db_session, s3):
        """PIPE-008: completed means the pipeline ran, verified is tracked apart."""
        request = pipeline.request_deletion("user-123", "hard")
        s3.fail_deletes = True
        clock.advance(hours=1)

        [result] = await pipeline.process_expired()

        assert result.success is False
        db_session.refresh(request)
        assert request.status == "completed"
        assert request.deletion_verified is False
        assert request.error == "object_storage: ServiceUnavailable"

    @pytest.mark.asyncio
    async def test_partial_request_keeps_account(self, pipeline, seeded_user, clock, db_session, identity):
        """PIPE-009: a partial request erases its categories and leaves the queue."""
        pipeline.request_deletion("user-123", "partial", scope=["sessions"])
        clock.advance(days=30)

        [result] = await pipeline.process_expired()

        assert result.success is True
        assert result.scope == ["sessions"]
        assert db_session.query(TrainingSession).count() == 0
        assert "user-123" in identity.users
        status = pipeline.get_deletion_status("user-123")
        assert status.deletion_scheduled is False
        assert pipeline.list_expired_scheduled() == []

    @pytest.mark.asyncio
    async def test_processing_request_is_resumed(self, pipeline, seeded_user, clock, db_session):
        """PIPE-010: a request left in processing by a crash is picked up again."""
        request = pipeline.request_deletion("user-123", "hard")
        clock.advance(hours=2)
        pipeline.scheduler.mark_processing(request.request_id)

        [result] = await pipeline.process_expired()

        assert result.deletion_request_id == request.request_id
        db_session.refresh(request)
        assert request.status == "completed"


class TestRequests:
    """Tests for request management through the pipeline (PIPE-011 to PIPE-014)."""

    def test_unschedule_cancels_open_request(self, pipeline, seeded_user, db_session):
        """PIPE-011: cancelling the schedule also cancels the waiting request."""
        request = pipeline.request_deletion("user-123", "soft")

        pipeline.cancel_scheduled_deletion("user-123")

        db_session.refresh(request)
        assert request.status == "cancelled"
        assert request.cancellation_reason == "deletion unscheduled"
        assert pipeline.get_deletion_status("user-123").deletion_scheduled is False

    def test_user_cancellation(self, pipeline, seeded_user):
        """PIPE-012: a user may cancel a soft request inside the window."""
        request = pipeline.request_deletion("user-123", "soft")

        cancelled = pipeline.cancel_deletion_request("user-123", request.request_id, "changed my mind")

        assert cancelled.status == "cancelled"
        assert cancelled.cancellation_reason == "changed my mind"

    def test_operations_are_audited_by_hash(self, pipeline, seeded_user, hasher):
        """PIPE-013: schedule and cancel leave audit entries keyed by the hash."""
        from erasure.gdpr.audit import ErasureOperation

        request = pipeline.request_deletion("user-123", "soft")
        pipeline.cancel_deletion_request("user-123", request.request_id)

        entries = pipeline.audit.list_audit_logs_for_subject(hasher.user_hash("user-123"))
        operations = {e.operation for e in entries}
        assert operations == {ErasureOperation.SCHEDULE, ErasureOperation.CANCEL}
        assert all(e.deletion_request_id == request.request_id for e in entries)

    def test_status_of_soft_request(self, pipeline, seeded_user, clock):
        """PIPE-014: status shows the request, its type and the recovery deadline."""
        request = pipeline.request_deletion("user-123", "soft")

        status = pipeline.get_deletion_status("user-123")

        assert status.deletion_scheduled is True
        assert status.request_id == request.request_id
        assert status.request_status == "scheduled"
        assert status.deletion_type == "soft"
        assert status.can_recover is True
        assert status.recover_deadline == clock.now + timedelta(days=30, hours=-1)


class TestSweepIsolation:
    """Tests for per-user failure handling in the sweep (PIPE-015)."""

    @pytest.mark.asyncio
    async def test_one_failing_user_does_not_stop_the_batch(self, pipeline, user_factory, clock, db_session, hasher):
        """PIPE-015: a database error for one user is rolled back and the next user is erased."""
        from sqlalchemy.exc import OperationalError

        user_factory("user-a", "a@example.com")
        user_factory("user-b", "b@example.com")
        pipeline.schedule_deletion("user-a", clock.now + timedelta(days=1))
        pipeline.schedule_deletion("user-b", clock.now + timedelta(days=2))
        clock.advance(days=3)

        original = pipeline.scheduler.mark_processing
        calls = []

        def fail_first(request_id):
            calls.append(request_id)
            if len(calls) == 1:
                raise OperationalError("UPDATE", {}, Exception("database is locked"))
            return original(request_id)

        with patch.object(pipeline.scheduler, "mark_processing", side_effect=fail_first):
            results = await pipeline.process_expired()

        assert len(calls) == 2
        assert [r.user_id_hash for r in results] == [hasher.user_hash("user-b")]
        assert db_session.get(UserAccount, "user-b") is None
        assert db_session.get(UserAccount, "user-a") is not None
        # still queued for the next sweep
        assert pipeline.list_expired_scheduled() == ["user-a"]
