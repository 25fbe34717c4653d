"""
Queue-level retry backoff.

A failed item normally goes straight back to pending and can be reclaimed
on the next poll. With a positive base delay, the worker pushes
scheduled_for out exponentially: base, 2*base, 4*base, ... capped at max.
"""
from datetime import datetime, timedelta

from lms_notify.config import Settings, settings as default_settings


class RetryPolicy:
    """Exponential backoff for retryable queue items."""

    def __init__(self, base_seconds: float = 0.0, max_seconds: float = 3600.0):
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or default_settings
        return cls(
            base_seconds=settings.NOTIFY_RETRY_BACKOFF_SECONDS,
            max_seconds=settings.NOTIFY_RETRY_BACKOFF_MAX_SECONDS,
        )

    def delay_seconds(self, attempts: int) -> float:
        """Delay after a failure, given attempts made before it."""
        if self.base_seconds <= 0:
            return 0.0
        return min(self.max_seconds, self.base_seconds * (2 ** max(0, attempts)))

    def next_retry_at(self, attempts: int, now: datetime) -> datetime | None:
        """
        New scheduled_for for a retryable item, or None to keep it unchanged.
        
        Args:
            attempts: attempts recorded on the item before this failure
            now: time of the failure
        """
        delay = self.delay_seconds(attempts)
        if delay <= 0:
            return None
        return now + timedelta(seconds=delay)
