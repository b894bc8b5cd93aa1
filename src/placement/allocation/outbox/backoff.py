"""Retry spacing for notification relay attempts."""
from __future__ import annotations

from dataclasses import dataclass

from placement.core.settings import OutboxConfig


@dataclass(slots=True)
class BackoffPolicy:
    """Exponential backoff with an upper bound and a retry budget."""

    base_seconds: float = 1.0
    cap_seconds: float = 300.0
    max_retries: int = 12

    @classmethod
    def from_config(cls, config: OutboxConfig) -> "BackoffPolicy":
        return cls(base_seconds=config.base_seconds, cap_seconds=config.cap_seconds, max_retries=config.max_retries)

    def next_delay(self, retry_count: int) -> float:
        attempt = max(retry_count, 1)
        delay = self.base_seconds * (2 ** (attempt - 1))
        return float(min(max(delay, self.base_seconds), self.cap_seconds))
