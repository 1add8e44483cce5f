"""
Bounded retry with exponential backoff
"""

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Type


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.1
    multiplier: float = 2.0
    max_delay: float = 2.0
    jitter_ratio: float = 0.0

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError(f"attempts must be >= 1, got {self.attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given failed attempt (1-based)"""
        delay = min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter_ratio:
            delay += delay * random.uniform(-self.jitter_ratio, self.jitter_ratio)
        return max(delay, 0.0)


def call_with_retry(
    fn: Callable[..., Any],
    *args,
    policy: Optional[RetryPolicy] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
    **kwargs,
) -> Any:
    """
    Call fn until it succeeds or the policy's attempts are exhausted.

    Only exceptions in retry_on are retried; the last one is re-raised
    once attempts run out.
    """
    policy = policy or RetryPolicy()

    for attempt in range(1, policy.attempts + 1):
        try:
            return fn(*args, **kwargs)
        except retry_on as e:
            if attempt == policy.attempts:
                print(f"{description} failed after {attempt} attempts: {str(e)}")
                raise
            delay = policy.delay_for(attempt)
            print(f"{description} attempt {attempt} failed ({str(e)}), retrying in {delay:.2f}s")
            sleep(delay)
