"""Tests for pipeline settings.

Test IDs: SET-001 through SET-005
"""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

VALID_ENV = {
    "CERTIFICATE_SIGNING_SECRET": "s" * 32,
    "USER_HASH_SALT": "pepper",
}


class TestRequiredSecrets:
    """Tests for fail-fast secrets (SET-001 to SET-003)."""

    def test_missing_signing_secret_fails(self):
        """SET-001: there is no default signing secret."""
        from erasure.settings import Settings

        with patch.dict(os.environ, {"USER_HASH_SALT": "pepper"}, clear=True):
            with pytest.raises(ValidationError):
                Settings(_env_file=None)

    def test_short_signing_secret_fails(self):
        """SET-002: the signing secret must be at least 32 characters."""
        from erasure.settings import Settings

        with patch.dict(os.environ, {**VALID_ENV, "CERTIFICATE_SIGNING_SECRET": "short"}, clear=True):
            with pytest.raises(ValidationError):
                Settings(_env_file=None)

    def test_blank_salt_fails(self):
        """SET-003: an empty user hash salt is rejected."""
        from erasure.settings import Settings

        with patch.dict(os.environ, {**VALID_ENV, "USER_HASH_SALT": "  "}, clear=True):
            with pytest.raises(ValidationError):
                Settings(_env_file=None)


class TestDefaults:
    """Tests for defaults and parsing (SET-004 to SET-005)."""

    def test_defaults(self):
        """SET-004: retention windows and limits have their documented defaults."""
        from erasure.settings import Settings

        with patch.dict(os.environ, VALID_ENV, clear=True):
            settings = Settings(_env_file=None)

        assert settings.deletion_grace_period_days == 30
        assert settings.recovery_code_ttl_hours == 24
        assert settings.recovery_code_max_attempts == 5
        assert settings.deletion_batch_size == 500
        assert settings.analytics_verify_fail_open is False
        assert settings.warehouse_table_names == ["users_anonymized", "training_sessions"]

    def test_singleton_and_reset(self):
        """SET-005: get_settings caches until reset_settings."""
        from erasure.settings import get_settings, reset_settings

        reset_settings()
        try:
            with patch.dict(os.environ, {**VALID_ENV, "SWEEP_BATCH_LIMIT": "50"}, clear=True):
                first = get_settings()
                assert first.sweep_batch_limit == 50
                assert get_settings() is first
            reset_settings()
            with patch.dict(os.environ, {**VALID_ENV, "SWEEP_BATCH_LIMIT": "0"}, clear=True):
                with pytest.raises(ValidationError):
                    get_settings()
        finally:
            reset_settings()
