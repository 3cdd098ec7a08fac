"""
Tests for settings validation and logging setup.
"""
import json
import logging

import pytest
import structlog
from pydantic import ValidationError

from fulfillment.config import Settings
from fulfillment.monitoring.logging import scrub_secrets, setup_logging


class TestSettings:
    """Test suite for environment configuration."""

    @pytest.mark.unit
    def test_defaults(self) -> None:
        settings = Settings()

        assert settings.reservation_ttl_minutes == 10
        assert settings.reserve_max_attempts == 3
        assert settings.reserve_backoff_seconds == 0.05
        assert settings.task_backoff_seconds == [5.0, 15.0, 30.0]
        assert settings.sweeper_interval_seconds == 300
        assert settings.is_sqlite

    @pytest.mark.unit
    def test_reads_prefixed_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("FULFILLMENT_RESERVATION_TTL_MINUTES", "15")
        monkeypatch.setenv("FULFILLMENT_APP_ENV", "production")

        settings = Settings()

        assert settings.reservation_ttl_minutes == 15
        assert settings.is_production

    @pytest.mark.unit
    def test_rejects_malformed_stripe_key(self) -> None:
        with pytest.raises(ValidationError, match="Invalid Stripe secret key"):
            Settings(stripe_secret_key="pk_live_123")

        assert Settings(stripe_secret_key="sk_live_123").stripe_enabled

    @pytest.mark.unit
    def test_log_level_is_normalized(self) -> None:
        assert Settings(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            Settings(log_level="chatty")

    @pytest.mark.unit
    def test_rejects_empty_task_backoff(self) -> None:
        with pytest.raises(ValidationError):
            Settings(task_backoff_seconds=[])


class TestLogging:
    """Test suite for structured logging setup."""

    @pytest.fixture(autouse=True)
    def restore_logging(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        for handler in root.handlers[:]:
            if handler not in handlers:
                root.removeHandler(handler)
        for handler in handlers:
            if handler not in root.handlers:
                root.addHandler(handler)
        root.setLevel(level)
        structlog.reset_defaults()

    @pytest.mark.unit
    def test_setup_logging_emits_flat_json(self, capsys) -> None:
        setup_logging(Settings(app_env="staging"))
        structlog.get_logger("fulfillment.test").info(
            "order_placed", order_id=1, payload={"payment_method_token": "pm_card_4242424242"}
        )

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "order_placed"
        assert record["order_id"] == 1
        assert record["level"] == "info"
        assert record["app_env"] == "staging"
        assert record["payload"]["payment_method_token"] == "***4242"

    @pytest.mark.unit
    def test_console_mode_is_not_json(self, capsys) -> None:
        setup_logging(Settings(log_json=False))
        structlog.get_logger("fulfillment.test").info("order_placed", order_id=1)

        line = capsys.readouterr().out.strip().splitlines()[-1]
        assert "order_placed" in line
        assert not line.startswith("{")

    @pytest.mark.unit
    def test_scrub_secrets_masks_nested_keys(self) -> None:
        event = scrub_secrets(
            None,
            "info",
            {
                "event": "stripe_request",
                "api_key": "sk_test_abcdefgh1234",
                "metadata": {"order_id": 4, "client_secret": "short"},
            },
        )

        assert event["api_key"] == "***1234"
        assert event["metadata"] == {"order_id": 4, "client_secret": "***REDACTED***"}
        assert event["event"] == "stripe_request"
