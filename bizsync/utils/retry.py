"""
Retry utilities with exponential backoff.

Used by the sync failure handler (job-level retries, delays in milliseconds)
and by the alert channels (delivery retries, delays in seconds).
"""
import random
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

# Network errors, including socket timeouts
TRANSIENT_EXCEPTIONS = (ConnectionError, TimeoutError, OSError)

TRANSIENT_STATUS_CODES = ("429", "500", "502", "503", "504")

TRANSIENT_MESSAGES = ("rate limit", "too many requests", "timeout", "timed out")


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Delay before retry `attempt` (1-indexed): base_delay * exponential_base^(attempt-1),
    capped at max_delay, plus up to 25% random jitter when enabled.

    The result is in the unit of base_delay.
    """
    delay = min(base_delay * exponential_base ** (attempt - 1), max_delay)
    if jitter:
        delay *= 1 + random.uniform(0, 0.25)
    return delay


def is_retryable_error(error: Exception) -> bool:
    """True for network errors and messages that look like rate limits, 5xx or timeouts"""
    if isinstance(error, TRANSIENT_EXCEPTIONS):
        return True

    message = str(error).lower()
    if any(code in message for code in TRANSIENT_STATUS_CODES):
        return True
    if any(text in message for text in TRANSIENT_MESSAGES):
        return True
    return "connection" in message and any(w in message for w in ("refused", "reset", "failed"))


@dataclass
class RetryPolicy:
    """Per-tenant retry policy for sync jobs. Delays are in milliseconds."""
    max_retries: int = 3
    initial_delay: int = 60000
    max_delay: int = 3600000
    backoff_multiplier: float = 2.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RetryPolicy":
        data = data or {}
        defaults = cls()
        return cls(
            max_retries=int(data.get("max_retries", defaults.max_retries)),
            initial_delay=int(data.get("initial_delay", defaults.initial_delay)),
            max_delay=int(data.get("max_delay", defaults.max_delay)),
            backoff_multiplier=float(data.get("backoff_multiplier", defaults.backoff_multiplier)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def delay_for(self, attempt: int) -> int:
        """Delay before retry number `attempt` (1-indexed), capped at max_delay"""
        return int(calculate_backoff(
            attempt,
            base_delay=self.initial_delay,
            max_delay=self.max_delay,
            exponential_base=self.backoff_multiplier,
            jitter=False
        ))

    def schedule(self) -> List[int]:
        """Delays for retries 1..max_retries"""
        return [self.delay_for(n) for n in range(1, self.max_retries + 1)]
