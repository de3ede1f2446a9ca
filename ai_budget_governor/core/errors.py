"""
Governance error taxonomy.

Denials are decided before the backend is called; audit and upstream
errors happen after.
"""

from enum import Enum


class DenialReason(Enum):
    """Why a request was not admitted."""
    RATE_LIMITED = "RATE_LIMITED"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    TIER_RESTRICTED = "TIER_RESTRICTED"
    PROFILE_NOT_FOUND = "PROFILE_NOT_FOUND"


class GovernanceDenial(Exception):
    """Raised when a request is refused by the governance layer."""
    reason: DenialReason
    user_message = "This request could not be processed."
    decision = None  # the RoutingDecision that produced the denial, if any

    def __init__(self, message: str = ""):
        super().__init__(message or self.user_message)


class RateLimitExceeded(GovernanceDenial):
    """Requests arrived too quickly. Retry after a short delay."""
    reason = DenialReason.RATE_LIMITED
    user_message = "Please wait a moment before trying again."


class BudgetExhausted(GovernanceDenial):
    """The budget cap for the current cycle has been reached."""
    reason = DenialReason.BUDGET_EXCEEDED
    user_message = "You've reached your usage limit for this billing cycle. Upgrade to continue."


class TierRestricted(GovernanceDenial):
    """This request class is disabled at the current budget health."""
    reason = DenialReason.TIER_RESTRICTED
    user_message = "Image generation is paused to conserve your budget. Try a text question instead."


class ProfileUnavailable(GovernanceDenial):
    """No usable cost profile exists for the user."""
    reason = DenialReason.PROFILE_NOT_FOUND
    user_message = "Something went wrong. Please try again later."


DENIAL_ERRORS = {
    cls.reason: cls
    for cls in (RateLimitExceeded, BudgetExhausted, TierRestricted, ProfileUnavailable)
}


class AuditFailure(Exception):
    """Recording spend failed after the backend call completed."""

    def __init__(self, message: str, user_id: str):
        super().__init__(message)
        self.user_id = user_id


class AuditProfileMissing(AuditFailure):
    """The charged user has no cost profile, so retrying cannot succeed."""


class UpstreamBackendError(Exception):
    """The AI backend call failed."""


class SafetyBlocked(UpstreamBackendError):
    """The AI backend refused the request on safety grounds."""
