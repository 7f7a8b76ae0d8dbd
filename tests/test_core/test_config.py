"""Tests for application configuration settings."""

import os
from unittest.mock import patch

from media_relay.core.config import Settings


class TestDefaults:
    """Test default values."""

    def test_should_have_expected_limits(self):
        """Test delivery and validation defaults."""
        settings = Settings()

        assert settings.INLINE_UPLOAD_LIMIT == 8 * 1024 * 1024
        assert settings.MAX_VIDEO_SIZE == 100 * 1024 * 1024
        assert settings.MAX_IMAGE_SIZE == 50 * 1024 * 1024
        assert settings.MAX_CONCURRENT_DOWNLOADS == 2
        assert settings.STUCK_OPERATION_MINUTES == 10

    def test_should_throttle_and_defer_by_default(self):
        """Test the cooldown and deferred retry defaults."""
        settings = Settings()

        assert settings.RATE_LIMIT_COOLDOWN_SECONDS == 10
        assert settings.DEFERRED_RETRY_INTERVAL_SECONDS == 120
        assert settings.DEFERRED_MAX_RETRIES == 10
        assert settings.DEFERRED_QUEUE_PATH == "./data/deferred-downloads.json"

    def test_should_override_via_environment(self):
        """Test settings can be overridden via environment."""
        with patch.dict(os.environ, {"MAX_CONCURRENT_DOWNLOADS": "4"}):
            settings = Settings()

        assert settings.MAX_CONCURRENT_DOWNLOADS == 4


class TestRemoteStoreSettings:
    """Test remote object store configuration."""

    def test_should_not_be_configured_without_credentials(self):
        """Test missing credentials leave the remote store disabled."""
        settings = Settings(S3_BUCKET_NAME="media", S3_ACCESS_KEY_ID=None)

        assert settings.remote_store_configured is False

    def test_should_be_configured_with_all_fields(self):
        """Test bucket, credentials and domain enable the remote store."""
        settings = Settings(
            S3_BUCKET_NAME="media",
            S3_ACCESS_KEY_ID="key",
            S3_SECRET_ACCESS_KEY="secret",
            S3_PUBLIC_DOMAIN="cdn.example.com",
        )

        assert settings.remote_store_configured is True

    def test_should_normalize_public_domain(self):
        """Test scheme and trailing slash are stripped from the public domain."""
        settings = Settings(S3_PUBLIC_DOMAIN="https://cdn.example.com/")

        assert settings.S3_PUBLIC_DOMAIN == "cdn.example.com"

    def test_should_strip_trailing_slash_from_local_base_url(self):
        """Test the local base URL never ends with a slash."""
        settings = Settings(LOCAL_BASE_URL="http://localhost:8000/files/")

        assert settings.LOCAL_BASE_URL == "http://localhost:8000/files"


class TestTestingIsolation:
    """Test TESTING mode isolation rules."""

    def test_should_prefix_database_name_in_testing_mode(self):
        """Test the database name gets a test_ prefix."""
        with patch.dict(os.environ, {"TESTING": "true"}, clear=False):
            os.environ.pop("TEST_DATABASE_URL", None)
            settings = Settings(DATABASE_URL="postgresql://u:p@db/media_relay")

        assert settings.DATABASE_URL == "postgresql://u:p@db/test_media_relay"

    def test_should_use_test_database_url_when_set(self):
        """Test TEST_DATABASE_URL takes precedence."""
        with patch.dict(
            os.environ,
            {"TESTING": "true", "TEST_DATABASE_URL": "postgresql://u:p@db/test_custom"},
        ):
            settings = Settings()

        assert settings.DATABASE_URL == "postgresql://u:p@db/test_custom"


class TestAdmins:
    """Test admin detection."""

    def test_should_detect_admin_users(self):
        """Test configured users are admins and others are not."""
        settings = Settings(ADMIN_USER_IDS=["42"])

        assert settings.is_admin("42") is True
        assert settings.is_admin("7") is False
        assert settings.is_admin(None) is False
