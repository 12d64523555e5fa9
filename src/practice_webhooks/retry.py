from dataclasses import dataclass
from datetime import datetime, timedelta

from practice_webhooks.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``base_delay * 2^(retry_count - 1)`` seconds, capped at ``max_delay``.

    With the default 60 s base the first failure waits 1 minute, the second
    2 minutes, the third 4 minutes.
    """

    base_delay: float = 60.0
    max_delay: float = 3600.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(base_delay=settings.retry_base_delay, max_delay=settings.retry_max_delay)

    def delay(self, retry_count: int) -> float:
        return min(self.base_delay * (2 ** max(retry_count - 1, 0)), self.max_delay)

    def next_retry_at(self, retry_count: int, max_retries: int, now: datetime) -> datetime | None:
        if retry_count >= max_retries:
            return None
        return now + timedelta(seconds=self.delay(retry_count))
