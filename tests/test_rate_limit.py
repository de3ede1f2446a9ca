"""
Unit tests for the rate limiter.
"""

from datetime import datetime, timedelta, timezone

import pytest

from ai_budget_governor.core.errors import DenialReason, GovernanceDenial, RateLimitExceeded
from ai_budget_governor.core.rate_limit import check_rate_limit, window_start

NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestRateLimit:
    """Test minimum inter-request window."""

    def test_no_prior_request_passes(self):
        """Verify a missing timestamp always passes."""
        check_rate_limit(None, NOW)

    def test_request_inside_window_rejected(self):
        """Verify a request 4.999s after the previous one is rejected."""
        with pytest.raises(RateLimitExceeded) as excinfo:
            check_rate_limit(NOW - timedelta(milliseconds=4999), NOW)

        assert excinfo.value.reason == DenialReason.RATE_LIMITED
        assert "minimum is 5000ms" in str(excinfo.value)

    def test_request_at_window_boundary_passes(self):
        """Verify elapsed time equal to the window is allowed."""
        check_rate_limit(NOW - timedelta(milliseconds=5000), NOW)

    def test_request_after_window_passes(self):
        """Verify requests well after the window pass."""
        check_rate_limit(NOW - timedelta(seconds=30), NOW)

    def test_custom_window(self):
        """Verify the window length is configurable."""
        last = NOW - timedelta(seconds=2)
        check_rate_limit(last, NOW, window_ms=1000)
        with pytest.raises(RateLimitExceeded):
            check_rate_limit(last, NOW, window_ms=3000)

    def test_future_timestamp_rejected(self):
        """Verify a timestamp ahead of the clock counts as inside the window."""
        with pytest.raises(RateLimitExceeded):
            check_rate_limit(NOW + timedelta(seconds=1), NOW)

    def test_rate_limit_is_a_governance_denial(self):
        """Verify callers can catch all denials with one type."""
        with pytest.raises(GovernanceDenial):
            check_rate_limit(NOW, NOW)

    def test_window_start(self):
        """Verify the window start is now minus the window."""
        assert window_start(NOW, 5000) == NOW - timedelta(seconds=5)
