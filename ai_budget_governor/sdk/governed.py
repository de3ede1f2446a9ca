"""
Governed AI client.

Wraps an AI backend so every call is admitted by the governance service
first and audited after it completes.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Iterator, Optional

from ..core.audit import AuditCharge
from ..core.errors import SafetyBlocked, UpstreamBackendError
from ..core.governor import GovernanceService
from ..core.relay import CancellableStream
from ..core.routing import RequestClass, RoutingDecision
from .backend import AIBackend

logger = logging.getLogger(__name__)

SAFETY_MESSAGE = (
    "I can't help with that request. Let's explore a different question instead."
)
STREAM_ERROR_MESSAGE = "\n\nError generating response."


@dataclass(frozen=True)
class GovernedResponse:
    """Backend output together with the decision and charge behind it."""
    content: str
    decision: RoutingDecision
    charge: Optional[AuditCharge]
    safety_blocked: bool = False


class GovernedAI:
    """AI client that enforces per-user budgets.

    Denials are raised as GovernanceDenial subclasses before the backend is
    touched. Accounting failures after a successful call are logged and
    queued on the governance service, never raised to the caller.
    """

    def __init__(self, governor: GovernanceService, backend: AIBackend):
        """Initialize governed client.

        Args:
            governor: Governance service deciding admission and recording spend
            backend: AI backend to call for admitted requests
        """
        self.governor = governor
        self.backend = backend

    def generate_text(self, user_id: str, prompt: str) -> GovernedResponse:
        """Answer a text prompt within the user's budget.

        Raises:
            GovernanceDenial: If the request is not admitted
            UpstreamBackendError: If the backend failed for a reason other than safety
        """
        decision = self.governor.admit(user_id, RequestClass.TEXT)

        try:
            result = self.backend.invoke(decision.model, prompt, RequestClass.TEXT)
        except SafetyBlocked:
            logger.info("Text request for %s was safety blocked", user_id)
            charge = self.governor.audit_safely(user_id, RequestClass.TEXT, safety_blocked=True)
            return GovernedResponse(SAFETY_MESSAGE, decision, charge, safety_blocked=True)

        tokens_in = result.tokens_in
        if tokens_in is None:
            tokens_in = self.governor.estimate_tokens(prompt)
        tokens_out = result.tokens_out
        if tokens_out is None:
            tokens_out = self.governor.estimate_tokens(result.content)

        charge = self.governor.audit_safely(
            user_id, RequestClass.TEXT, tokens_in=tokens_in, tokens_out=tokens_out
        )
        return GovernedResponse(result.content, decision, charge)

    def generate_image(self, user_id: str, prompt: str) -> GovernedResponse:
        """Generate an image at the quality the user's budget allows.

        Raises:
            GovernanceDenial: If the request is not admitted
            UpstreamBackendError: If the backend failed for a reason other than safety
        """
        decision = self.governor.admit(user_id, RequestClass.IMAGE)

        try:
            result = self.backend.invoke(
                decision.model,
                prompt,
                RequestClass.IMAGE,
                image_resolution=decision.image_resolution,
            )
        except SafetyBlocked:
            logger.info("Image request for %s was safety blocked", user_id)
            charge = self.governor.audit_safely(user_id, RequestClass.IMAGE, safety_blocked=True)
            return GovernedResponse(SAFETY_MESSAGE, decision, charge, safety_blocked=True)

        charge = self.governor.audit_safely(user_id, RequestClass.IMAGE)
        return GovernedResponse(result.content, decision, charge)

    def stream_text(
        self,
        user_id: str,
        prompt: str,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[str]:
        """Stream a text answer, billing whatever was produced.

        Admission happens eagerly, so a denial raises here rather than on
        first iteration. The partial output is audited when the stream ends,
        fails, is cancelled through `cancel`, or is closed by the caller.
        A closeable upstream is closed before that audit runs.

        Raises:
            GovernanceDenial: If the request is not admitted
        """
        decision = self.governor.admit(user_id, RequestClass.TEXT)
        relay = CancellableStream(self.backend.stream(decision.model, prompt), cancel)
        return self._relay(user_id, prompt, relay)

    def _relay(self, user_id: str, prompt: str, relay: CancellableStream) -> Iterator[str]:
        safety_blocked = False
        fragments = iter(relay)
        try:
            for fragment in fragments:
                yield fragment
        except SafetyBlocked:
            logger.info("Stream for %s was safety blocked", user_id)
            safety_blocked = True
            yield SAFETY_MESSAGE
        except UpstreamBackendError:
            logger.exception("Stream for %s failed upstream", user_id)
            yield STREAM_ERROR_MESSAGE
        finally:
            fragments.close()
            self.governor.audit_safely(
                user_id,
                RequestClass.TEXT,
                tokens_in=self.governor.estimate_tokens(prompt),
                tokens_out=self.governor.estimate_tokens(relay.text),
                safety_blocked=safety_blocked,
            )
