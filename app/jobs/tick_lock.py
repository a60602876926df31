"""Leader lock for background dispatch ticks.

With ``WORKER_SETTINGS['use_redis']`` the lock is a Redis key taken with
``SET NX PX`` so only one process in a deployment runs a tick per interval;
the TTL releases it if the holder dies mid-tick. Without Redis (or when Redis
is unreachable) a process-local lock is used, which still prevents the worker
thread from overlapping with itself.
"""
from __future__ import annotations

import threading
import uuid
from typing import Optional

import redis

from app.config import WORKER_SETTINGS
from app.utils import get_logger

logger = get_logger(__name__)

# Delete only if we still own the key.
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class TickLock:
    def __init__(self, *, use_redis: Optional[bool] = None, redis_client: Optional[redis.Redis] = None) -> None:
        self._key = str(WORKER_SETTINGS["lock_key"])
        self._ttl_ms = int(float(WORKER_SETTINGS["lock_ttl_seconds"]) * 1000)  # type: ignore[arg-type]
        self._local = threading.Lock()
        self._redis: Optional[redis.Redis] = redis_client
        wants_redis = bool(WORKER_SETTINGS["use_redis"]) if use_redis is None else use_redis
        if self._redis is None and wants_redis:
            self._init_redis_client()

    def _init_redis_client(self) -> None:
        url = str(WORKER_SETTINGS["redis_url"])
        timeout = float(WORKER_SETTINGS["redis_health_check_timeout"])  # type: ignore[arg-type]
        try:
            client = redis.from_url(url, socket_connect_timeout=timeout)
            client.ping()
            self._redis = client
            logger.info("Tick lock backed by Redis", url=url)
        except (redis.RedisError, ConnectionError) as e:
            self._redis = None
            logger.warning("Redis unavailable, tick lock is process-local", error=str(e))

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "memory"

    def acquire(self) -> Optional[str]:
        """Token when the lock was taken, ``None`` when another holder has it."""
        if not self._local.acquire(blocking=False):
            return None
        if self._redis is None:
            return "local"
        token = uuid.uuid4().hex
        try:
            taken = self._redis.set(self._key, token, nx=True, px=self._ttl_ms)
        except redis.RedisError as e:
            self._local.release()
            logger.warning("Tick lock acquire failed", error=str(e))
            return None
        if not taken:
            self._local.release()
            return None
        return token

    def release(self, token: Optional[str]) -> None:
        if token is None:
            return
        try:
            if self._redis is not None and token != "local":
                self._redis.eval(_RELEASE_SCRIPT, 1, self._key, token)
        except redis.RedisError as e:
            # TTL expiry frees the key anyway
            logger.warning("Tick lock release failed", error=str(e))
        finally:
            self._local.release()


__all__ = ["TickLock"]
