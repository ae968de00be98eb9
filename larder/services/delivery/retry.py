from __future__ import annotations

from dataclasses import dataclass

from larder.core.config import Settings, get_settings, parse_backoff_schedule
from larder.domain.messages import RetryDecision


DEFAULT_BACKOFF_SCHEDULE_S: tuple[float, ...] = (2.0, 4.0, 8.0)
DEFAULT_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-schedule retry policy for notification delivery.

    ``attempt`` counts sends already made for a message, starting at 0. After the
    send numbered ``attempt`` fails, the message is retried only while the next
    attempt number stays below ``max_attempts``, after waiting
    ``schedule[attempt]`` seconds. With the defaults a message is sent at t=0,
    t=2s and t=6s, then dropped.
    """

    schedule: tuple[float, ...] = DEFAULT_BACKOFF_SCHEDULE_S
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    def __post_init__(self) -> None:
        if not self.schedule:
            raise ValueError("retry schedule must not be empty")
        if any(value < 0 for value in self.schedule):
            raise ValueError("retry delays must be non-negative")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay(self, attempt: int) -> float:
        # Indices past the table reuse the last delay.
        if attempt < 0:
            raise ValueError("attempt must be non-negative")
        return self.schedule[min(attempt, len(self.schedule) - 1)]

    def should_retry(self, attempt_count: int) -> bool:
        return attempt_count < self.max_attempts

    def decide(self, failed_attempt: int) -> RetryDecision:
        return RetryDecision(
            should_retry=self.should_retry(failed_attempt + 1),
            delay=self.delay(failed_attempt),
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> RetryPolicy:
        settings = settings or get_settings()
        return cls(
            schedule=parse_backoff_schedule(settings.notify_backoff_schedule_s),
            max_attempts=settings.notify_max_attempts,
        )
