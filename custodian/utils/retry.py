from __future__ import annotations

import random
from datetime import datetime, timedelta

from ..contracts import BackoffStrategy, RetryPolicy


def compute_backoff(policy: RetryPolicy, attempt: int, jitter: float = 0.0) -> float:
    """Seconds to wait before retry number ``attempt`` (1-based)."""
    attempt = max(attempt, 1)
    if policy.strategy == BackoffStrategy.EXPONENTIAL:
        delay = policy.base_delay * policy.exponential_base ** (attempt - 1)
    elif policy.strategy == BackoffStrategy.LINEAR:
        delay = policy.base_delay * attempt
    else:
        delay = policy.base_delay
    delay = min(delay, policy.max_delay)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


def next_attempt_at(
    policy: RetryPolicy, attempt: int, now: datetime, jitter: float = 0.0
) -> datetime:
    """Earliest time the next attempt may run."""
    return now + timedelta(seconds=compute_backoff(policy, attempt, jitter))
