"""Exponential backoff with jitter for transient store failures."""

import random
from typing import Optional


class RetryPolicy:
    """
    delay(n) = min(cap, base * 2 ** (n - 1) * uniform(1 - jitter, 1 + jitter))

    ``max_attempts`` of 0 means retry forever.
    """

    def __init__(self, base: float = 1.0, cap: float = 30.0, jitter: float = 0.2,
                 max_attempts: int = 0, rng: Optional[random.Random] = None):
        if base <= 0 or cap <= 0:
            raise ValueError("base and cap must be greater than 0")
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        self.base = base
        self.cap = cap
        self.jitter = jitter
        self.max_attempts = max_attempts
        self._rng = rng or random.Random()

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the ``attempt``-th consecutive failure (1-based)."""
        raw = self.base * (2 ** (max(attempt, 1) - 1))
        factor = self._rng.uniform(1 - self.jitter, 1 + self.jitter) if self.jitter else 1.0
        return min(self.cap, raw * factor)

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts > 0 and attempt >= self.max_attempts
