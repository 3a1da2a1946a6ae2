"""
Unit tests for log scrubbing and app context.
"""
import pytest

from seatpay.monitoring.logging import add_app_context, scrub_sensitive_data


class TestScrubSensitiveData:
    @pytest.mark.unit
    def test_long_secret_keeps_last_four(self) -> None:
        event = scrub_sensitive_data(
            None, "info", {"event": "hold_opened", "client_secret": "pi_123_secret_abcd"}
        )

        assert event["client_secret"] == "***abcd"
        assert event["event"] == "hold_opened"

    @pytest.mark.unit
    def test_structured_values_are_replaced(self) -> None:
        """Test payout details never render, whatever their shape."""
        event = scrub_sensitive_data(
            None, "info", {"payout_details": {"email": "driver@example.com"}, "signature": "v1"}
        )

        assert event["payout_details"] == "***REDACTED***"
        assert event["signature"] == "***REDACTED***"

    @pytest.mark.unit
    def test_other_fields_untouched(self) -> None:
        event = scrub_sensitive_data(None, "info", {"booking_id": 42, "amount_cents": 3275})

        assert event == {"booking_id": 42, "amount_cents": 3275}


@pytest.mark.unit
def test_app_context_added() -> None:
    event = add_app_context(None, "info", {"event": "x"})

    assert event["app_name"] == "seatpay"
    assert "app_env" in event
