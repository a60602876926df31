"""In-memory circuit breaker for outbound webhook targets (process-local).

Keys are arbitrary strings; the dispatch client keys by target host so one
dead n8n instance does not get hammered on every tick.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict

from app.config import CIRCUIT_BREAKER


@dataclass
class BreakerState:
    failures: int = 0
    state: str = "CLOSED"
    opened_at: datetime | None = None
    half_open_probes: int = 0


class CircuitBreaker:
    def __init__(self):
        self._states: Dict[str, BreakerState] = {}
        # Ticks may run from the worker thread and request handlers at once.
        self._lock = threading.Lock()

    def _get(self, key: str) -> BreakerState:
        return self._states.setdefault(key, BreakerState())

    def allow_call(self, key: str) -> tuple[bool, str | None]:
        with self._lock:
            st = self._get(key)
            if st.state == "OPEN":
                cooldown = float(CIRCUIT_BREAKER["open_cooldown_seconds"])
                if st.opened_at and datetime.now(timezone.utc) - st.opened_at >= timedelta(seconds=cooldown):
                    st.state = "HALF_OPEN"
                    st.half_open_probes = 0
                else:
                    return False, "circuit_open"
            if st.state == "HALF_OPEN":
                if st.half_open_probes >= int(CIRCUIT_BREAKER["half_open_probe_count"]):
                    return False, "half_open_probe_exhausted"
                st.half_open_probes += 1
            return True, None

    def record_success(self, key: str) -> None:
        with self._lock:
            st = self._get(key)
            st.failures = 0
            st.state = "CLOSED"
            st.opened_at = None
            st.half_open_probes = 0

    def record_failure(self, key: str) -> None:
        with self._lock:
            st = self._get(key)
            st.failures += 1
            if st.state == "HALF_OPEN" or (st.state == "CLOSED" and st.failures >= int(CIRCUIT_BREAKER["failure_threshold"])):
                st.state = "OPEN"
                st.opened_at = datetime.now(timezone.utc)

    def reset(self) -> None:
        with self._lock:
            self._states.clear()

    def snapshot(self) -> dict[str, dict[str, object]]:
        with self._lock:
            return {
                k: {
                    "failures": v.failures,
                    "state": v.state,
                    "opened_at": v.opened_at.isoformat() if v.opened_at else None,
                }
                for k, v in self._states.items()
            }


GLOBAL_CIRCUIT_BREAKER = CircuitBreaker()

__all__ = ["CircuitBreaker", "GLOBAL_CIRCUIT_BREAKER", "BreakerState"]
