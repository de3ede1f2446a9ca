"""
Contract for the generative AI backend.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from ai_budget_governor.core.routing import RequestClass


@dataclass(frozen=True)
class AIResult:
    """Completed backend response. Token counts are None when unreported."""
    content: str
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None


class AIBackend(Protocol):
    """A metered backend that accepts a prompt and model identifier.

    Implementations raise SafetyBlocked for safety refusals and
    UpstreamBackendError for any other failure.
    """

    def invoke(
        self,
        model_id: str,
        prompt: str,
        modality: RequestClass,
        image_resolution: Optional[str] = None,
    ) -> AIResult:
        ...

    def stream(self, model_id: str, prompt: str) -> Iterable[str]:
        """Return the response as a lazy sequence of text fragments.

        If the returned object has close(), it must be safe to call from
        another thread and must abort a read that is in progress.
        """
        ...
