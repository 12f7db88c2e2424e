# =============================================================================
# reva_core/offline/backoff.py
# Retry Delay Calculation
# =============================================================================

import random
from typing import Optional


def compute_backoff(
    attempt: int,
    base: float = 1.0,
    cap: float = 30.0,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Full-jitter exponential backoff.

    The delay is drawn uniformly from [0, min(cap, base * 2 ** attempt)].

    Args:
        attempt: Zero-based number of failures so far
        base: Delay ceiling for the first retry, in seconds
        cap: Upper bound for any delay, in seconds
        rng: Random source (tests pass a seeded one)
    """
    attempt = max(0, attempt)
    # Bound the exponent so huge attempt counts do not overflow
    ceiling = min(cap, base * (2 ** min(attempt, 32)))
    return (rng or random).uniform(0, ceiling)
