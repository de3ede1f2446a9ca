"""
Tests for routing decisions and admission control.
"""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from ai_budget_governor.config.loader import default_governance_config
from ai_budget_governor.core.errors import (
    BudgetExhausted,
    DenialReason,
    ProfileUnavailable,
    RateLimitExceeded,
    TierRestricted,
)
from ai_budget_governor.core.governor import GovernanceService
from ai_budget_governor.core.health import HealthLevel
from ai_budget_governor.core.routing import RequestClass, RoutingDecision, decide
from ai_budget_governor.storage.db import get_connection
from ai_budget_governor.storage.models import SubscriptionTier
from ai_budget_governor.storage.repository import get_repository

START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
ROUTING = default_governance_config().routing


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class TestDecisionMatrix:
    """Test the model selection matrix."""

    def test_green_text(self):
        """Verify green text uses the highest quality model."""
        decision = decide(HealthLevel.GREEN, RequestClass.TEXT, ROUTING)
        assert decision.can_proceed
        assert decision.model == "gpt-4o"
        assert decision.denial is None

    def test_green_image_full_resolution(self):
        """Verify green images are generated at full resolution."""
        decision = decide(HealthLevel.GREEN, RequestClass.IMAGE, ROUTING)
        assert decision.can_proceed
        assert decision.model == "dall-e-3"
        assert decision.image_resolution == "1024x1024"

    def test_yellow_image_reduced_resolution(self):
        """Verify yellow images are downgraded."""
        decision = decide(HealthLevel.YELLOW, RequestClass.IMAGE, ROUTING)
        assert decision.can_proceed
        assert decision.model == "dall-e-2"
        assert decision.image_resolution == "512x512"

    def test_yellow_text_keeps_full_model(self):
        """Verify yellow text still uses the full model."""
        decision = decide(HealthLevel.YELLOW, RequestClass.TEXT, ROUTING)
        assert decision.model == decide(HealthLevel.GREEN, RequestClass.TEXT, ROUTING).model

    def test_red_text_lowest_cost_model(self):
        """Verify red text falls back to the cheapest model."""
        decision = decide(HealthLevel.RED, RequestClass.TEXT, ROUTING)
        assert decision.can_proceed
        assert decision.model == "gpt-4o-mini"

    def test_red_image_denied(self):
        """Verify red images are denied even though text proceeds."""
        decision = decide(HealthLevel.RED, RequestClass.IMAGE, ROUTING)
        assert not decision.can_proceed
        assert decision.denial == DenialReason.TIER_RESTRICTED
        assert decision.model is None

    @pytest.mark.parametrize("request_class", list(RequestClass))
    def test_black_always_denied(self, request_class):
        """Verify black denies every request class."""
        decision = decide(HealthLevel.BLACK, request_class, ROUTING)
        assert not decision.can_proceed
        assert decision.denial == DenialReason.BUDGET_EXCEEDED

    def test_black_image_marked_cached(self):
        """Verify black images can be served from the cached fallback."""
        assert decide(HealthLevel.BLACK, RequestClass.IMAGE, ROUTING).is_cached
        assert not decide(HealthLevel.BLACK, RequestClass.TEXT, ROUTING).is_cached

    def test_raise_for_denial(self):
        """Verify each denial raises its matching error."""
        decision = decide(HealthLevel.RED, RequestClass.IMAGE, ROUTING)
        with pytest.raises(TierRestricted) as excinfo:
            decision.raise_for_denial()
        assert excinfo.value.decision is decision

    def test_admitted_decision_does_not_raise(self):
        """Verify admitted decisions pass raise_for_denial."""
        decide(HealthLevel.GREEN, RequestClass.TEXT, ROUTING).raise_for_denial()


class TestGovernanceRouting:
    """Test GovernanceService.route against a real store."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.store = get_repository(self.db_path)
        self.clock = FakeClock()
        self.service = GovernanceService(self.store, clock=self.clock)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _profile(self, user_id, tier, cost):
        self.service.register_user(user_id, tier)
        if cost:
            self.store.update_profile(user_id, cost_used=Decimal(cost))

    def test_missing_profile_denied(self):
        """Verify a missing profile is a fail-safe deny."""
        decision = self.service.route("ghost", "text")

        assert not decision.can_proceed
        assert decision.health == HealthLevel.BLACK
        assert decision.denial == DenialReason.PROFILE_NOT_FOUND

    def test_missing_profile_admit_raises(self):
        """Verify admit raises ProfileUnavailable for unknown users."""
        with pytest.raises(ProfileUnavailable):
            self.service.admit("ghost", RequestClass.IMAGE)

    def test_unreadable_profile_denied(self):
        """Verify store errors deny rather than allow."""
        with patch.object(self.store, "get_profile", side_effect=sqlite3.OperationalError("disk I/O error")):
            decision = self.service.route("user-1", "text")

        assert decision.denial == DenialReason.PROFILE_NOT_FOUND

    def test_free_tier_over_cap(self):
        """Scenario: free, cost 0.021 of 0.02 is black for both classes."""
        self._profile("user-1", SubscriptionTier.FREE, "0.021")

        text = self.service.route("user-1", "text")
        self.clock.advance(seconds=10)
        image = self.service.route("user-1", "image")

        assert text.health == HealthLevel.BLACK
        assert not text.can_proceed
        assert text.denial == DenialReason.BUDGET_EXCEEDED
        assert image.health == HealthLevel.BLACK
        assert not image.can_proceed

    def test_pro_monthly_yellow(self):
        """Scenario: pro_monthly at 53% admits reduced images and full text."""
        self._profile("user-1", SubscriptionTier.PRO_MONTHLY, "1.60")

        image = self.service.route("user-1", "image")
        self.clock.advance(seconds=10)
        text = self.service.route("user-1", "text")

        assert image.health == HealthLevel.YELLOW
        assert image.can_proceed
        assert image.image_resolution == "512x512"
        assert text.can_proceed
        assert text.model == "gpt-4o"

    def test_pro_monthly_red(self):
        """Scenario: pro_monthly at 83% admits cheap text and restricts images."""
        self._profile("user-1", SubscriptionTier.PRO_MONTHLY, "2.50")

        text = self.service.route("user-1", "text")
        self.clock.advance(seconds=10)
        image = self.service.route("user-1", "image")

        assert text.health == HealthLevel.RED
        assert text.can_proceed
        assert text.model == "gpt-4o-mini"
        assert not image.can_proceed
        assert image.denial == DenialReason.TIER_RESTRICTED

    def test_black_admit_raises_budget_exhausted(self):
        """Verify admit surfaces budget exhaustion distinctly."""
        self._profile("user-1", SubscriptionTier.FREE, "0.02")

        with pytest.raises(BudgetExhausted) as excinfo:
            self.service.admit("user-1", "image")

        assert excinfo.value.decision.is_cached

    def test_second_request_inside_window_rate_limited(self):
        """Verify two admitted requests inside 5s rate-limit the second."""
        self._profile("user-1", SubscriptionTier.PRO_MONTHLY, None)

        first = self.service.route("user-1", "text")
        self.clock.advance(milliseconds=4999)
        second = self.service.route("user-1", "text")

        assert first.can_proceed
        assert not second.can_proceed
        assert second.denial == DenialReason.RATE_LIMITED
        with pytest.raises(RateLimitExceeded):
            second.raise_for_denial()

    def test_requests_outside_window_both_proceed(self):
        """Verify requests more than 5s apart both proceed."""
        self._profile("user-1", SubscriptionTier.PRO_MONTHLY, None)

        first = self.service.route("user-1", "text")
        self.clock.advance(seconds=5, milliseconds=1)
        second = self.service.route("user-1", "text")

        assert first.can_proceed
        assert second.can_proceed

    def test_rate_limited_requests_do_not_extend_window(self):
        """Verify a rejected request doesn't reset the window."""
        self._profile("user-1", SubscriptionTier.PRO_MONTHLY, None)

        self.service.route("user-1", "text")
        self.clock.advance(seconds=3)
        assert self.service.route("user-1", "text").denial == DenialReason.RATE_LIMITED
        self.clock.advance(seconds=2)
        assert self.service.route("user-1", "text").can_proceed

    def test_denied_requests_do_not_claim_window(self):
        """Verify a tier-restricted request leaves the window open for text."""
        self._profile("user-1", SubscriptionTier.PRO_MONTHLY, "2.50")

        assert self.service.route("user-1", "image").denial == DenialReason.TIER_RESTRICTED
        assert self.service.route("user-1", "text").can_proceed

    def test_rate_limit_checked_before_budget(self):
        """Verify rate limiting is reported ahead of budget errors."""
        self._profile("user-1", SubscriptionTier.FREE, "0.05")
        self.store.update_profile("user-1", last_request_at=START - timedelta(seconds=1))

        decision = self.service.route("user-1", "text")

        assert decision.denial == DenialReason.RATE_LIMITED
        assert decision.health == HealthLevel.BLACK

    def test_unreadable_timestamp_allows_request(self):
        """Verify a corrupt last_request_at does not block the user."""
        self._profile("user-1", SubscriptionTier.PRO_MONTHLY, None)
        conn = get_connection(self.db_path)
        try:
            conn.execute("UPDATE cost_profile SET last_request_at = 'corrupt'")
            conn.commit()
        finally:
            conn.close()

        assert self.service.route("user-1", "text").can_proceed

    def test_slot_claim_failure_allows_request(self):
        """Verify errors stamping the timestamp do not crash the decision."""
        self._profile("user-1", SubscriptionTier.PRO_MONTHLY, None)

        with patch.object(self.store, "claim_request_slot", side_effect=sqlite3.OperationalError("locked")):
            decision = self.service.route("user-1", "text")

        assert decision.can_proceed

    def test_concurrent_claim_loses_rate_limited(self):
        """Verify a request that loses the slot race is rate limited."""
        self._profile("user-1", SubscriptionTier.PRO_MONTHLY, None)

        with patch.object(self.store, "claim_request_slot", return_value=False):
            decision = self.service.route("user-1", "text")

        assert decision.denial == DenialReason.RATE_LIMITED

    def test_profile_deleted_before_claim_not_found(self):
        """Verify a profile removed before the slot claim is reported as missing."""
        self._profile("user-1", SubscriptionTier.PRO_MONTHLY, None)

        with patch.object(self.store, "claim_request_slot", return_value=None):
            decision = self.service.route("user-1", "text")

        assert not decision.can_proceed
        assert decision.denial == DenialReason.PROFILE_NOT_FOUND

    def test_state_recomputed_from_store(self):
        """Verify spend changes are visible on the very next request."""
        self._profile("user-1", SubscriptionTier.PRO_MONTHLY, None)
        assert self.service.route("user-1", "image").health == HealthLevel.GREEN

        self.store.add_cost("user-1", Decimal("2.40"), now=START)
        self.clock.advance(seconds=10)

        assert self.service.route("user-1", "image").denial == DenialReason.TIER_RESTRICTED

    def test_request_class_validated(self):
        """Verify unknown request classes are rejected."""
        self._profile("user-1", SubscriptionTier.FREE, None)
        with pytest.raises(ValueError):
            self.service.route("user-1", "voice")

    def test_route_returns_decision(self):
        """Verify route returns a RoutingDecision."""
        self._profile("user-1", SubscriptionTier.FREE, None)
        assert isinstance(self.service.route("user-1", "text"), RoutingDecision)
