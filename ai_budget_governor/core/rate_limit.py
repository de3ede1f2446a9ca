"""
Per-user request rate limiting.

Rejects requests that arrive within a minimum window of the previous one.
"""

from datetime import datetime, timedelta
from typing import Optional

from .errors import RateLimitExceeded

DEFAULT_WINDOW_MS = 5000


def window_start(now: datetime, window_ms: int = DEFAULT_WINDOW_MS) -> datetime:
    """Latest prior-request time that still lets a request through at `now`."""
    return now - timedelta(milliseconds=window_ms)


def check_rate_limit(
    last_request_at: Optional[datetime],
    now: datetime,
    window_ms: int = DEFAULT_WINDOW_MS,
) -> None:
    """Raise if the previous request was less than window_ms ago.

    A missing timestamp (no prior request, or one that could not be read)
    always passes.

    Raises:
        RateLimitExceeded: If the request arrived inside the window
    """
    if last_request_at is None:
        return
    if last_request_at > window_start(now, window_ms):
        elapsed_ms = (now - last_request_at).total_seconds() * 1000
        raise RateLimitExceeded(
            f"Request {elapsed_ms:.0f}ms after the previous one; minimum is {window_ms}ms"
        )
