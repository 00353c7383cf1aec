"""Exponential retry schedule for sync delivery."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

DEFAULT_BASE_DELAY = Decimal("1")
DEFAULT_FACTOR = Decimal("2")
DEFAULT_MAX_DELAY = Decimal("60")
DEFAULT_MAX_ATTEMPTS = 8


@dataclass(frozen=True)
class RetryPolicy:
    """
    delay(n) = min(max_delay, base * factor ** (n - 1)) seconds after the
    n-th failed attempt; ``max_attempts`` failures make the action permanent.
    """

    base_delay: Decimal = DEFAULT_BASE_DELAY
    factor: Decimal = DEFAULT_FACTOR
    max_delay: Decimal = DEFAULT_MAX_DELAY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    def __post_init__(self) -> None:
        if self.base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay(self, attempts: int) -> Decimal:
        if attempts < 1:
            return Decimal(0)
        return min(self.max_delay, self.base_delay * self.factor ** (attempts - 1))

    def next_attempt_at(self, now: datetime, attempts: int) -> datetime:
        return now + timedelta(seconds=float(self.delay(attempts)))

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
