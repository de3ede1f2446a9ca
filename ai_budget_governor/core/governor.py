"""
Governance service: admission control and spend accounting.

Every request goes through route() before the backend is called and
through audit() after it completes.

Routing Order:
1. Load the cost profile - missing or unreadable profiles are denied
2. Rate limiting - requests inside the window are denied
3. Budget health - recomputed from persisted spend on every call
4. Model selection - see core.routing
5. Claim the rate-limit slot for admitted requests
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Union

from ai_budget_governor.config.loader import GovernanceConfig, default_governance_config
from ai_budget_governor.storage.models import CostProfile, SubscriptionTier
from ai_budget_governor.storage.repository import CostProfileRepository

from .audit import AuditCharge, compute_audit_charge
from .errors import AuditFailure, AuditProfileMissing, RateLimitExceeded
from .health import HealthLevel, evaluate_health
from .rate_limit import check_rate_limit, window_start
from .routing import RequestClass, RoutingDecision, decide, profile_unavailable, rate_limited
from .token_counter import estimate_tokens

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PendingAudit:
    """A charge that could not be recorded and awaits retry."""
    user_id: str
    charge: AuditCharge
    completed_at: datetime


class GovernanceService:
    """Per-user budget governance over a cost profile store.

    Args:
        store: Persistence collaborator holding cost profiles
        config: Governance policy (defaults to the built-in policy)
        clock: Returns the current aware datetime; injectable for tests
    """

    def __init__(
        self,
        store: CostProfileRepository,
        config: Optional[GovernanceConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.config = config or default_governance_config()
        self.clock = clock or _utcnow
        self._pending: List[PendingAudit] = []
        self._pending_lock = threading.Lock()

    def register_user(
        self,
        user_id: str,
        tier: SubscriptionTier = SubscriptionTier.FREE,
    ) -> CostProfile:
        """Create the user's cost profile if this is the first time they are seen."""
        return self.store.create_profile(user_id, tier=tier, now=self.clock())

    def health_of(self, profile: CostProfile) -> HealthLevel:
        """Budget health of a loaded profile."""
        return evaluate_health(profile.subscription_tier, profile.cost_used, self.config.plan_caps)

    def route(self, user_id: str, request_class: Union[RequestClass, str]) -> RoutingDecision:
        """Decide whether and how a request may proceed.

        Never raises for governance outcomes; denials are reported through
        RoutingDecision.denial.

        Args:
            user_id: User making the request
            request_class: "text" or "image"

        Returns:
            RoutingDecision for this request
        """
        request_class = RequestClass(request_class)
        now = self.clock()

        try:
            profile = self.store.get_profile(user_id)
        except (sqlite3.Error, ValueError):
            logger.exception("Cost profile for %s could not be read", user_id)
            return profile_unavailable()
        if profile is None:
            logger.warning("No cost profile for %s, denying request", user_id)
            return profile_unavailable()

        health = self.health_of(profile)
        window_ms = self.config.rate_limit_window_ms

        try:
            check_rate_limit(profile.last_request_at, now, window_ms)
        except RateLimitExceeded as e:
            logger.info("Rate limited %s: %s", user_id, e)
            return rate_limited(health)

        decision = decide(health, request_class, self.config.routing)
        if not decision.can_proceed:
            logger.info(
                "Denied %s request for %s at %s health: %s",
                request_class.value, user_id, health.value, decision.denial.value,
            )
            return decision

        claimed = self._claim_slot(user_id, now, window_ms)
        if claimed is None:
            logger.warning("Cost profile for %s disappeared before admission", user_id)
            return profile_unavailable()
        if not claimed:
            logger.info("Rate limited %s: concurrent request claimed the window", user_id)
            return rate_limited(health)

        logger.debug(
            "Admitted %s request for %s at %s health using %s",
            request_class.value, user_id, health.value, decision.model,
        )
        return decision

    def admit(self, user_id: str, request_class: Union[RequestClass, str]) -> RoutingDecision:
        """Route a request and raise if it was not admitted.

        Raises:
            GovernanceDenial: The subclass matching the denial reason
        """
        decision = self.route(user_id, request_class)
        decision.raise_for_denial()
        return decision

    def _claim_slot(self, user_id: str, now: datetime, window_ms: int) -> Optional[bool]:
        try:
            return self.store.claim_request_slot(user_id, now, window_start(now, window_ms))
        except sqlite3.Error:
            # Only abuse prevention depends on this write, not budget integrity
            logger.warning("Could not stamp last request for %s, allowing", user_id, exc_info=True)
            return True

    def audit(
        self,
        user_id: str,
        request_class: Union[RequestClass, str],
        tokens_in: Optional[int] = None,
        tokens_out: Optional[int] = None,
        safety_blocked: bool = False,
    ) -> AuditCharge:
        """Charge a completed request to the user's spend.

        Each call adds its charge; callers must audit a request at most once.

        Returns:
            The AuditCharge that was recorded

        Raises:
            ValueError: If a token count is negative
            AuditFailure: If the charge could not be persisted
        """
        charge = compute_audit_charge(
            RequestClass(request_class),
            self.config.costs,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            safety_blocked=safety_blocked,
        )
        self._record(user_id, charge, self.clock())
        return charge

    def audit_safely(
        self,
        user_id: str,
        request_class: Union[RequestClass, str],
        tokens_in: Optional[int] = None,
        tokens_out: Optional[int] = None,
        safety_blocked: bool = False,
    ) -> Optional[AuditCharge]:
        """Audit without raising; failed charges are queued for retry.

        Charges for users without a profile can never be recorded and are
        logged and dropped instead.

        Used once the user has already received the response.
        """
        charge = compute_audit_charge(
            RequestClass(request_class),
            self.config.costs,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            safety_blocked=safety_blocked,
        )
        completed_at = self.clock()
        try:
            self._record(user_id, charge, completed_at)
        except AuditProfileMissing:
            logger.error("Dropped charge of %s for %s: no cost profile", charge.amount, user_id)
            return None
        except AuditFailure:
            logger.exception("Audit failed for %s, queued %s for retry", user_id, charge.amount)
            with self._pending_lock:
                self._pending.append(PendingAudit(user_id, charge, completed_at))
            return None
        return charge

    @property
    def pending_audits(self) -> List[PendingAudit]:
        """Charges waiting to be recorded."""
        with self._pending_lock:
            return list(self._pending)

    def retry_pending_audits(self) -> int:
        """Retry queued charges.

        Returns:
            Number of charges recorded. Charges for missing profiles are
            dropped; the rest stay queued.
        """
        with self._pending_lock:
            pending, self._pending = self._pending, []

        recorded = 0
        remaining = []
        for item in pending:
            try:
                self._record(item.user_id, item.charge, item.completed_at)
                recorded += 1
            except AuditProfileMissing:
                logger.error(
                    "Dropped queued charge of %s for %s: no cost profile",
                    item.charge.amount, item.user_id,
                )
            except AuditFailure:
                logger.warning("Retry of audit for %s failed again", item.user_id)
                remaining.append(item)

        with self._pending_lock:
            self._pending = remaining + self._pending
        return recorded

    def estimate_tokens(self, text: Optional[str]) -> int:
        """Estimate tokens using the configured characters-per-token ratio."""
        return estimate_tokens(text, self.config.chars_per_token)

    def _record(self, user_id: str, charge: AuditCharge, completed_at: datetime) -> None:
        try:
            charged = self.store.add_cost(
                user_id,
                charge.amount,
                image_increment=charge.image_increment,
                now=completed_at,
            )
        except sqlite3.Error as e:
            raise AuditFailure(f"Could not record charge for {user_id}: {e}", user_id) from e
        if not charged:
            raise AuditProfileMissing(f"No cost profile for {user_id}", user_id)
        logger.debug(
            "Charged %s %s for %s request",
            user_id, charge.amount, charge.request_class.value,
        )
