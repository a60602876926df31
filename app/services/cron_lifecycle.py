"""cron-job.org lifecycle: keep one external cron job pointed at our scheduler tick.

Outcomes are reported, never raised:
* ``created`` / ``updated`` / ``deleted`` / ``noop`` -> ok
* ``skipped`` -> no API key, or cron-job.org kept answering 429 after the
  retry ladder (1 s, 2 s, 4 s); callers should simply try again later
* ``error`` -> anything else
"""
from __future__ import annotations

import asyncio
import json
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from app.config import APP_BASE_URL, CRON_JOB_ORG_SETTINGS, CRON_SECRET
from app.utils import get_logger
from app.utils.backoff import compute_backoff_seconds

logger = get_logger(__name__)

POST_REQUEST_METHOD = 1

# (method, url, headers, json body or None) -> (status, response text)
Transport = Callable[[str, str, dict, Optional[dict]], Awaitable[tuple[int, str]]]


class CronJobOrgError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.message = message

    @property
    def rate_limited(self) -> bool:
        return self.status == 429 or "rate limit" in self.message.lower()


@dataclass
class CronSyncResult:
    ok: bool
    status: str
    message: str
    job_id: Optional[int] = None
    details: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


async def aiohttp_transport(method: str, url: str, headers: dict, body: Optional[dict]) -> tuple[int, str]:
    timeout = aiohttp.ClientTimeout(total=float(CRON_JOB_ORG_SETTINGS["timeout_seconds"]))  # type: ignore[arg-type]
    async with aiohttp.ClientSession(timeout=timeout) as session:
        data = json.dumps(body) if body is not None else None
        async with session.request(method, url, headers=headers, data=data) as response:
            return response.status, await response.text()


def _error_message(status: int, text: str) -> str:
    if not text:
        return f"HTTP {status}"
    try:
        data = json.loads(text)
    except ValueError:
        return text
    if isinstance(data, dict):
        return str(data.get("error") or data.get("message") or f"HTTP {status}")
    return text


def scheduler_tick_url() -> str:
    return f"{APP_BASE_URL}{CRON_JOB_ORG_SETTINGS['tick_path']}"


def scheduler_job_payload() -> dict[str, Any]:
    headers = {"Content-Type": "application/json"}
    if CRON_SECRET:
        headers["X-Cron-Secret"] = CRON_SECRET
    return {
        "enabled": True,
        "title": str(CRON_JOB_ORG_SETTINGS["job_title"]),
        "saveResponses": True,
        "url": scheduler_tick_url(),
        "redirectSuccess": True,
        "requestMethod": POST_REQUEST_METHOD,
        # every minute, UTC
        "schedule": {
            "timezone": "UTC",
            "expiresAt": 0,
            "hours": [-1],
            "mdays": [-1],
            "minutes": [-1],
            "months": [-1],
            "wdays": [-1],
        },
        "extendedData": {"headers": headers},
    }


class CronJobOrgClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        transport: Optional[Transport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.api_key = api_key if api_key is not None else CRON_JOB_ORG_SETTINGS["api_key"]
        self.base_url = str(base_url or CRON_JOB_ORG_SETTINGS["api_base_url"]).rstrip("/")
        self._transport = transport or aiohttp_transport
        self._sleep = sleep
        self._sync_lock = threading.Lock()
        self._last_sync_at: float = 0.0

    async def call(self, method: str, path: str, body: Optional[dict] = None) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        retries = int(CRON_JOB_ORG_SETTINGS["rate_limit_retries"])  # type: ignore[call-overload]
        for attempt in range(retries + 1):
            status, text = await self._transport(method, f"{self.base_url}{path}", headers, body)
            if 200 <= status < 300:
                if status == 204 or not text:
                    return {}
                data = json.loads(text)
                return data if isinstance(data, dict) else {}
            message = _error_message(status, text)
            if status == 429 and attempt < retries:
                wait = compute_backoff_seconds(attempt + 1, base=1, factor=2, jitter_pct=0)
                logger.warning("cron-job.org rate limited; retrying", path=path, attempt=attempt + 1, wait_seconds=wait)
                await self._sleep(wait)
                continue
            raise CronJobOrgError(status, message)
        raise CronJobOrgError(429, "rate limit retries exhausted")

    async def find_scheduler_job_id(self) -> Optional[int]:
        listing = await self.call("GET", "/jobs")
        jobs = listing.get("jobs") or []
        target_url = scheduler_tick_url()
        title = str(CRON_JOB_ORG_SETTINGS["job_title"])
        for job in jobs:
            if (job.get("title") or "").strip() == title and (job.get("url") or "").strip() == target_url:
                return job.get("jobId")
        for job in jobs:
            if (job.get("url") or "").strip() == target_url:
                return job.get("jobId")
        return None

    def _failure(self, e: Exception, action: str) -> CronSyncResult:
        if isinstance(e, CronJobOrgError) and e.rate_limited:
            logger.warning("cron-job.org rate limit; sync skipped", action=action, error=str(e))
            return CronSyncResult(ok=False, status="skipped", message=f"cron-job.org rate limit, scheduler cron {action} skipped", details=str(e))
        logger.error("cron-job.org sync failed", action=action, error=str(e))
        return CronSyncResult(ok=False, status="error", message=f"cron-job.org {action} failed", details=str(e))

    def _missing_key(self) -> Optional[CronSyncResult]:
        if self.api_key:
            return None
        return CronSyncResult(ok=False, status="skipped", message="Cron API key not configured; cron sync skipped")

    async def ensure_scheduler_cron_job(self) -> CronSyncResult:
        missing = self._missing_key()
        if missing:
            return missing
        payload = scheduler_job_payload()
        try:
            job_id = await self.find_scheduler_job_id()
            if job_id is not None:
                await self.call("PATCH", f"/jobs/{job_id}", {"job": payload})
                return CronSyncResult(ok=True, status="updated", job_id=job_id, message=f"Cron job updated (jobId={job_id}, url={payload['url']})")
            created = await self.call("PUT", "/jobs", {"job": payload})
        except (CronJobOrgError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            return self._failure(e, "sync")

        job_id = created.get("jobId")
        if not isinstance(job_id, int):
            return CronSyncResult(ok=False, status="error", message="Cron job created but no jobId returned")
        return CronSyncResult(ok=True, status="created", job_id=job_id, message=f"Cron job created (jobId={job_id}, url={payload['url']})")

    async def delete_scheduler_cron_job(self) -> CronSyncResult:
        missing = self._missing_key()
        if missing:
            return missing
        try:
            job_id = await self.find_scheduler_job_id()
            if job_id is None:
                return CronSyncResult(ok=True, status="noop", message="No scheduler cron job to delete")
            await self.call("DELETE", f"/jobs/{job_id}")
        except (CronJobOrgError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            return self._failure(e, "delete")
        return CronSyncResult(ok=True, status="deleted", job_id=job_id, message=f"Scheduler cron job deleted (jobId={job_id})")

    async def sync_scheduler_cron_lifecycle(self, force: bool = False) -> CronSyncResult:
        missing = self._missing_key()
        if missing:
            return missing
        cooldown = float(CRON_JOB_ORG_SETTINGS["lifecycle_cooldown_seconds"])  # type: ignore[arg-type]
        with self._sync_lock:
            now = time.monotonic()
            if not force and self._last_sync_at and now - self._last_sync_at < cooldown:
                return CronSyncResult(ok=True, status="noop", message="Cron lifecycle sync ran recently; skipped")
            self._last_sync_at = now
        result = await self.ensure_scheduler_cron_job()
        logger.info("Cron lifecycle sync finished", status=result.status, job_id=result.job_id)
        return result


_default_client: Optional[CronJobOrgClient] = None


def get_cron_client() -> CronJobOrgClient:
    global _default_client
    if _default_client is None:
        _default_client = CronJobOrgClient()
    return _default_client


async def sync_scheduler_cron_lifecycle(force: bool = False) -> CronSyncResult:
    return await get_cron_client().sync_scheduler_cron_lifecycle(force=force)


__all__ = [
    "CronJobOrgClient",
    "CronJobOrgError",
    "CronSyncResult",
    "get_cron_client",
    "scheduler_job_payload",
    "scheduler_tick_url",
    "sync_scheduler_cron_lifecycle",
]
