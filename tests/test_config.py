"""
Tests for Basement Configuration
================================

Tests centralized config loading.
"""

import os
import pytest
from unittest.mock import patch
from basement_core.config import BasementConfig, DigitalOceanConfig, PollingConfig, StripeConfig


class TestBasementConfig:
    """Test config loading."""

    def test_defaults(self):
        """Default config has sensible values."""
        config = BasementConfig()
        assert config.log_level == "INFO"
        assert config.log_format == "json"
        assert config.polling.interval_seconds == 10
        assert config.polling.max_attempts == 30
        assert config.reconcile.interval_seconds == 1800
        assert config.reconcile.initial_delay_seconds == 180
        assert config.reconcile.throttle_seconds == 2
        assert config.fleet_sync.interval_seconds == 3600
        assert config.verification.unknown_cert_as_absent is False
        assert config.stripe.auto_refund_failed is True

    def test_from_env(self):
        """Config loads from environment variables."""
        env = {
            "DIGITALOCEAN_TOKEN": "do_token",
            "STRIPE_SECRET_KEY": "sk_test_123",
            "STRIPE_WEBHOOK_SECRET": "whsec_123",
            "POLL_INTERVAL_SECONDS": "5",
            "POLL_MAX_ATTEMPTS": "12",
            "SSL_RECONCILE_INTERVAL_SECONDS": "600",
            "SSL_UNKNOWN_CERT_AS_ABSENT": "true",
            "LOG_LEVEL": "DEBUG",
            "LOG_FORMAT": "text",
        }
        with patch.dict(os.environ, env, clear=False):
            config = BasementConfig.from_env()
            assert config.digitalocean.api_token == "do_token"
            assert config.stripe.secret_key == "sk_test_123"
            assert config.stripe.webhook_secret == "whsec_123"
            assert config.polling.interval_seconds == 5
            assert config.polling.max_attempts == 12
            assert config.reconcile.interval_seconds == 600
            assert config.verification.unknown_cert_as_absent is True
            assert config.log_level == "DEBUG"
            assert config.log_format == "text"

    def test_auto_refund_can_be_disabled(self):
        with patch.dict(os.environ, {"STRIPE_AUTO_REFUND_FAILED": "false"}):
            assert BasementConfig.from_env().stripe.auto_refund_failed is False

    def test_background_jobs_can_be_disabled(self):
        with patch.dict(os.environ, {"ENABLE_BACKGROUND_JOBS": "0"}):
            assert BasementConfig.from_env().enable_background_jobs is False


class TestPollingConfig:

    def test_budget(self):
        """Default budget is about five minutes."""
        assert PollingConfig().budget_seconds == 300

    def test_custom_budget(self):
        assert PollingConfig(interval_seconds=2, max_attempts=3).budget_seconds == 6


class TestDigitalOceanConfig:

    def test_not_configured(self):
        assert DigitalOceanConfig().is_configured is False

    def test_configured(self):
        assert DigitalOceanConfig(api_token="tok").is_configured is True


class TestStripeConfig:

    def test_partial_not_configured(self):
        """Partial config reports not configured."""
        assert StripeConfig(secret_key="sk").is_configured is False

    def test_configured(self):
        assert StripeConfig(secret_key="sk", webhook_secret="whsec").is_configured is True
