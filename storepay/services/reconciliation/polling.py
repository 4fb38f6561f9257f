"""Bounded polling policy for waiting on a payment to complete."""

import random
from dataclasses import dataclass

from storepay.common.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    interval_seconds: float = 3.0
    max_attempts: int = 10
    jitter_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.interval_seconds < 0 or self.jitter_seconds < 0:
            raise ValueError("interval and jitter must be non-negative")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            interval_seconds=settings.status_poll_interval_seconds,
            max_attempts=settings.status_poll_max_attempts,
            jitter_seconds=settings.status_poll_jitter_seconds,
        )

    def delay(self) -> float:
        """Pause before the next attempt."""

        if not self.jitter_seconds:
            return self.interval_seconds
        return self.interval_seconds + random.uniform(0, self.jitter_seconds)
