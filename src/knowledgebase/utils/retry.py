"""Backoff helpers for work that is redelivered by the queue."""

from __future__ import annotations

import random


def exponential_backoff(
    attempt: int,
    *,
    base: float = 1.0,
    factor: float = 2.0,
    max_delay: float = 60.0,
    jitter_ratio: float = 0.1,
) -> float:
    """Return jittered exponential backoff for the provided attempt number."""

    bounded_attempt = attempt if attempt > 0 else 1
    delay = min(base * (factor ** (bounded_attempt - 1)), max_delay)
    jitter = random.uniform(0, delay * jitter_ratio) if jitter_ratio else 0.0
    return delay + jitter
