"""Tests for post-deletion verification.

Test IDs: VER-001 through VER-007
"""

from unittest.mock import AsyncMock, patch

import pytest


@pytest.fixture
def verifier(pipeline):
    return pipeline.verifier


class TestVerifyAll:
    """Tests for VerificationEngine.verify_all (VER-001 to VER-005)."""

    @pytest.mark.asyncio
    async def test_existing_user_fails_every_check(self, verifier, seeded_user):
        """VER-001: before erasure every subsystem reports residue."""
        result = await verifier.verify_all("user-123")

        assert result.all_passed is False
        assert result.primary_store is False
        assert result.object_storage is False
        assert result.analytics_warehouse is False
        assert result.identity_provider is False
        assert "object_storage:user-files" in result.remaining
        assert "analytics_warehouse:user-data" in result.remaining
        assert "identity_provider:user-record" in result.remaining
        assert "primary_store:profile" in result.remaining

    @pytest.mark.asyncio
    async def test_unknown_user_passes(self, verifier):
        """VER-002: a user that never existed verifies clean."""
        result = await verifier.verify_all("ghost")

        assert result.all_passed is True
        assert result.remaining == []
        assert result.to_dict()["all_passed"] is True

    @pytest.mark.asyncio
    async def test_raising_check_does_not_mask_others(self, verifier, pipeline, seeded_user):
        """VER-003: a check that raises is not verified; the rest still run."""
        storage = pipeline.coordinator.stages[1]

        with patch.object(storage, "verify", AsyncMock(side_effect=RuntimeError("boom"))):
            result = await verifier.verify_all("user-123")

        assert result.object_storage is False
        assert "object_storage:unverifiable" in result.remaining
        assert "identity_provider:user-record" in result.remaining

    @pytest.mark.asyncio
    async def test_partial_scope_skips_identity(self, verifier, seeded_user, identity):
        """VER-004: the login record is out of scope for partial erasure."""
        result = await verifier.verify_all("user-123", ["sessions"])

        assert result.identity_provider is True
        assert not any(r.startswith("identity_provider") for r in result.remaining)

    @pytest.mark.asyncio
    async def test_pipeline_normalises_scope(self, pipeline, seeded_user):
        """VER-005: verify_deletion validates the scope first."""
        from erasure.gdpr.errors import ValidationError

        with pytest.raises(ValidationError):
            await pipeline.verify_deletion("user-123", ["photos"])


class TestSingleChecks:
    """Tests for the per-subsystem checks (VER-006 to VER-007)."""

    @pytest.mark.asyncio
    async def test_primary_store_reports_categories(self, verifier, seeded_user):
        """VER-006: primary store residue is reported per category."""
        result = await verifier.verify_primary_store("user-123")

        assert result.verified is False
        assert result.remaining == [
            "primary_store:sessions",
            "primary_store:settings",
            "primary_store:subscriptions",
            "primary_store:consents",
            "primary_store:profile",
        ]

    @pytest.mark.asyncio
    async def test_boolean_checks(self, verifier, seeded_user, s3, identity):
        """VER-007: the other checks answer with a plain boolean."""
        assert await verifier.verify_object_storage("user-123") is False
        assert await verifier.verify_identity_provider("user-123") is False

        s3.buckets["user-uploads"].clear()
        identity.users.clear()

        assert await verifier.verify_object_storage("user-123") is True
        assert await verifier.verify_identity_provider("user-123") is True
        assert await verifier.verify_analytics_warehouse("user-123") is False
