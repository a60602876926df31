"""In-memory fixed-window rate limiter.

Keys are caller identities (API key, or "public" for anonymous requests) and
each key keeps an independent window per category ("extension",
"reconciliation", "default"). Single-process only; a horizontally scaled
deployment would move the counters into Redis behind the same interface.

check_and_increment -> (allowed, meta) where meta carries the values for the
X-RateLimit-Limit / X-RateLimit-Remaining / X-RateLimit-Reset headers.
"""
from __future__ import annotations

import time
import asyncio
from dataclasses import dataclass, field
from typing import Dict, Tuple

@dataclass
class Window:
    started_at: int
    count: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

class InMemoryRateLimiter:
    def __init__(self):
        self._windows: Dict[Tuple[str, str], Window] = {}
        self._registry_lock = asyncio.Lock()

    def _now(self) -> int:
        return int(time.time())

    async def _window_for(self, key: str, category: str, started_at: int) -> Window:
        window = self._windows.get((key, category))
        if window is None:
            async with self._registry_lock:
                window = self._windows.setdefault((key, category), Window(started_at=started_at))
        return window

    async def check_and_increment(self, key: str, category: str, limit: int, window_seconds: int) -> Tuple[bool, dict]:
        now = self._now()
        started_at = now - (now % window_seconds)
        window = await self._window_for(key, category, started_at)

        async with window.lock:
            if window.started_at != started_at:
                window.started_at = started_at
                window.count = 0
            window.count += 1
            allowed = window.count <= limit
            return allowed, {
                "limit": limit,
                "remaining": max(0, limit - window.count) if allowed else 0,
                "reset_epoch": window.started_at + window_seconds,
                "count": window.count,
                "category": category,
            }

    def reset(self) -> None:
        self._windows.clear()

# Singleton instance used application-wide
rate_limiter = InMemoryRateLimiter()

__all__ = ["rate_limiter", "InMemoryRateLimiter"]
