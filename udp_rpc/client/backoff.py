"""
Retry backoff

Linear backoff between call attempts: the wait after attempt n is n * base.
"""

from typing import Optional


class BackoffTimer:
    """Linear backoff timer

    Delays grow strictly with the attempt number until the optional cap, which
    spreads retries of many clients apart.
    """

    def __init__(self, base_ms: float = 500, max_ms: Optional[float] = None):
        """Initialize backoff timer

        Args:
            base_ms: Delay after the first attempt (milliseconds)
            max_ms: Upper bound on any delay (milliseconds), None for no cap
        """
        if base_ms < 0:
            raise ValueError("base_ms must not be negative")
        if max_ms is not None and max_ms < base_ms:
            raise ValueError("max_ms must be at least base_ms")
        self.base_ms = base_ms
        self.max_ms = max_ms
        self.attempts = 0

    def reset(self):
        """Reset attempt count"""
        self.attempts = 0

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given 1-based attempt (seconds)"""
        if attempt < 1:
            return 0.0
        delay_ms = attempt * self.base_ms
        if self.max_ms is not None:
            delay_ms = min(delay_ms, self.max_ms)
        return delay_ms / 1000.0

    def next_delay(self) -> float:
        """Advance the attempt counter and return its delay (seconds)"""
        self.attempts += 1
        return self.delay_for(self.attempts)

    def total_delay(self, attempts: int) -> float:
        """Sum of the waits between the given number of attempts (seconds)"""
        return sum(self.delay_for(n) for n in range(1, attempts))
