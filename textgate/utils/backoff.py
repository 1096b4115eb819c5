"""
Exponential backoff with jitter - shared by dispatch retries and webhook re-processing.

delay(n) = min(cap, base * 2**n), then "equal jitter": half fixed, half random,
so a burst of failures against the gateway does not retry in lockstep.
"""
import random
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional


class BackoffPolicy:
    def __init__(
        self,
        base_seconds: float = 1.0,
        max_seconds: float = 30.0,
        max_retries: int = 3,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self.max_retries = max_retries
        self._rand = rand

    def delay(self, retry_number: int) -> float:
        """Delay in seconds before retry number retry_number (0-based)."""
        ceiling = min(self.max_seconds, self.base_seconds * (2 ** retry_number))
        half = ceiling / 2
        return half + half * self._rand()

    def next_retry_at(
        self,
        retry_count: int,
        now: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """When the next retry is due, or None once the retry budget is spent."""
        if retry_count >= self.max_retries:
            return None
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=self.delay(retry_count))

    def with_max_retries(self, max_retries: int) -> "BackoffPolicy":
        return BackoffPolicy(self.base_seconds, self.max_seconds, max_retries, self._rand)

    def __repr__(self) -> str:
        return (
            f"<BackoffPolicy base={self.base_seconds}s max={self.max_seconds}s "
            f"retries={self.max_retries}>"
        )


def dispatch_policy() -> BackoffPolicy:
    """Backoff policy for transient gateway failures, from settings."""
    from textgate.config import get_settings
    settings = get_settings()
    return BackoffPolicy(
        base_seconds=settings.dispatch_backoff_base_seconds,
        max_seconds=settings.dispatch_backoff_max_seconds,
        max_retries=settings.dispatch_max_retries,
    )


def webhook_policy() -> BackoffPolicy:
    """Backoff policy for webhook re-processing, from settings."""
    from textgate.config import get_settings
    settings = get_settings()
    return BackoffPolicy(
        base_seconds=settings.webhook_retry_base_seconds,
        max_seconds=settings.webhook_retry_max_seconds,
        max_retries=settings.webhook_max_retries,
    )
