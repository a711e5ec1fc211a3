"""
Tests for log configuration and redaction.
"""
import pytest

from momo_gateway.monitoring.logging import REDACTED, app_context, redact, setup_logging


class TestLogging:
    """Test suite for structlog setup."""

    @pytest.mark.unit
    def test_app_context_follows_given_settings(self, test_settings) -> None:
        setup_logging(test_settings)

        event = app_context(None, "info", {"event": "ping"})

        assert event["app_name"] == "momo-gateway-test"
        assert event["app_env"] == "test"

    @pytest.mark.unit
    def test_app_context_keeps_explicit_fields(self, test_settings) -> None:
        setup_logging(test_settings)

        event = app_context(None, "info", {"event": "ping", "app_env": "override"})

        assert event["app_env"] == "override"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_app_binds_its_settings(self, client) -> None:
        assert app_context.app_env == "test"

    @pytest.mark.unit
    def test_redacts_credentials(self) -> None:
        event = {
            "tenant_id": "tenant-a",
            "idempotency_key": "6ba7b810-9dad-11d1-80b4-00c04fd430c8",
            "credentials": {"api_key": "k", "subscription_key": "s", "client_id": "c"},
            "headers": [{"Authorization": "Bearer abc"}],
            "access_token": "tok",
        }

        masked = redact(event)

        assert masked["tenant_id"] == "tenant-a"
        assert masked["idempotency_key"] == event["idempotency_key"]
        assert masked["credentials"] == {
            "api_key": REDACTED,
            "subscription_key": REDACTED,
            "client_id": "c",
        }
        assert masked["headers"] == [{"Authorization": REDACTED}]
        assert masked["access_token"] == REDACTED
