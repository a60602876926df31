"""Exponential backoff helpers with jitter.

Used for the scheduler retry ladder (minutes) and cron-job.org 429 waits
(seconds); the unit is whatever ``base`` is expressed in.
"""
from __future__ import annotations

import random
from typing import Optional, Sequence

from app.config import BACKOFF_POLICY


def compute_backoff_seconds(attempt: int, *, base: Optional[float] = None, factor: Optional[float] = None, max_seconds: Optional[float] = None, jitter_pct: Optional[float] = None) -> float:
    """Delay before retry number ``attempt`` (1-based): base * factor^(attempt-1), capped, +/- jitter."""
    if attempt < 1:
        attempt = 1
    base = float(base if base is not None else BACKOFF_POLICY["base_seconds"])
    factor = float(factor if factor is not None else BACKOFF_POLICY["factor"])
    max_seconds = float(max_seconds if max_seconds is not None else BACKOFF_POLICY["max_seconds"])
    jitter_pct = float(jitter_pct if jitter_pct is not None else BACKOFF_POLICY["jitter_pct"])

    delay = min(base * (factor ** (attempt - 1)), max_seconds)
    if jitter_pct > 0:
        jitter_amount = delay * jitter_pct
        delay = random.uniform(delay - jitter_amount, delay + jitter_amount)
    return max(delay, 0.0)


def ladder_step(ladder: Sequence[int | float], retry_count: int) -> float:
    """Pick the wait for ``retry_count`` from a fixed ladder, sticking to the last rung."""
    if not ladder:
        return 0.0
    index = min(max(retry_count, 1), len(ladder)) - 1
    return float(ladder[index])


__all__ = ["compute_backoff_seconds", "ladder_step"]
