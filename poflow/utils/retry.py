from __future__ import annotations

import random


def compute_backoff(
    attempt: int,
    base_delay: float = 2.0,
    max_delay: float = 300.0,
    jitter: float = 0.1,
) -> float:
    """Compute capped exponential backoff with proportional jitter.

    ``attempt`` is 1-based: the first retry waits ``base_delay`` seconds.
    """
    delay = min(base_delay * (2 ** max(attempt - 1, 0)), max_delay)
    return delay + random.uniform(0, jitter * delay)


def compute_quota_backoff(
    attempt: int,
    base_delay: float = 2.0,
    max_delay: float = 300.0,
    jitter: float = 0.1,
    multiplier: float = 5.0,
) -> float:
    """Backoff for rate-limited collaborators, longer than ``compute_backoff``."""
    return compute_backoff(
        attempt,
        base_delay=base_delay * multiplier,
        max_delay=max_delay * multiplier,
        jitter=jitter,
    )
