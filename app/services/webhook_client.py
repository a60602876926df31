"""Outbound webhook HTTP client (aiohttp).

Every call is bounded by an ``aiohttp.ClientTimeout``; transport failures and
timeouts are folded into ``DispatchResult(ok=False, status=0)`` so the caller
can audit them like any other response. Only an empty URL is a caller error.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional
from urllib.parse import urlsplit

import aiohttp

from app.config import DISPATCH_SETTINGS, SCHEDULER_SETTINGS
from app.utils import get_logger

logger = get_logger(__name__)


@dataclass
class DispatchResult:
    ok: bool
    status: int
    body: str
    url: str
    method: str
    duration_ms: int


# Signature shared by dispatch_webhook and the fakes used in tests.
Sender = Callable[..., Awaitable[DispatchResult]]


def truncate_body(body: str | None) -> str:
    limit = int(DISPATCH_SETTINGS["max_response_body_chars"])
    text = body or ""
    return text if len(text) <= limit else text[:limit]


def breaker_key(url: str) -> str:
    """Circuit breaker key for a target: its host (falls back to the raw URL)."""
    return urlsplit(url).netloc.lower() or url


def build_request_headers(
    headers: Mapping[str, Any] | None,
    idempotency_key: str | None = None,
    triggered_at: str | None = None,
    *,
    with_body: bool = True,
) -> dict[str, str]:
    merged = {str(k): str(v) for k, v in (headers or {}).items()}
    if with_body:
        merged.setdefault("Content-Type", "application/json")
    if idempotency_key:
        merged[str(SCHEDULER_SETTINGS["trigger_header"])] = idempotency_key
    if triggered_at:
        merged[str(SCHEDULER_SETTINGS["triggered_at_header"])] = triggered_at
    return merged


async def dispatch_webhook(
    url: str,
    method: str = "POST",
    headers: Mapping[str, Any] | None = None,
    payload: Mapping[str, Any] | None = None,
    idempotency_key: str | None = None,
    triggered_at: str | None = None,
    timeout: Optional[float] = None,
) -> DispatchResult:
    if not url or not url.strip():
        raise ValueError("Webhook target URL is required")
    method = (method or "POST").upper()
    send_body = method != "GET"
    request_headers = build_request_headers(headers, idempotency_key, triggered_at, with_body=send_body)
    client_timeout = aiohttp.ClientTimeout(total=float(timeout or DISPATCH_SETTINGS["timeout_seconds"]))

    started = time.perf_counter()
    try:
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            kwargs: dict[str, Any] = {"headers": request_headers}
            if send_body:
                kwargs["data"] = json.dumps(dict(payload or {}), default=str)
            async with session.request(method, url, **kwargs) as response:
                body = await response.text()
                duration_ms = int((time.perf_counter() - started) * 1000)
                result = DispatchResult(
                    ok=200 <= response.status < 300,
                    status=response.status,
                    body=truncate_body(body),
                    url=url,
                    method=method,
                    duration_ms=duration_ms,
                )
    except asyncio.TimeoutError:
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.warning("Webhook request timed out", url=url, method=method, duration_ms=duration_ms)
        return DispatchResult(ok=False, status=0, body="Request timed out", url=url, method=method, duration_ms=duration_ms)
    except aiohttp.ClientError as e:
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.warning("Webhook client error", url=url, method=method, error=str(e))
        return DispatchResult(ok=False, status=0, body=truncate_body(str(e)), url=url, method=method, duration_ms=duration_ms)

    log = logger.info if result.ok else logger.warning
    log("Webhook dispatched", url=url, method=method, status=result.status, duration_ms=result.duration_ms)
    return result


__all__ = [
    "DispatchResult",
    "Sender",
    "dispatch_webhook",
    "build_request_headers",
    "breaker_key",
    "truncate_body",
]
