"""Retry delay computation"""

import random
from dataclasses import dataclass


@dataclass
class RetryPolicy:
    """Exponential backoff with optional full jitter"""
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)"""
        ceiling = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter:
            return random.uniform(0, ceiling)
        return ceiling
