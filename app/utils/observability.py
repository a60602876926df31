"""Observability helpers (correlation IDs)."""
from __future__ import annotations
import uuid
from typing import Any, Mapping

REQUEST_ID_HEADER = "X-Request-ID"

def ensure_request_id(headers: Mapping[str, str]) -> str:
    return headers.get(REQUEST_ID_HEADER, None) or str(uuid.uuid4())

def request_id_of(request: Any) -> str:
    """Request ID assigned by the logging middleware, else the inbound header."""
    state_id = getattr(getattr(request, "state", None), "request_id", None)
    if state_id:
        return str(state_id)
    return request.headers.get(REQUEST_ID_HEADER, "unknown")

__all__ = ["ensure_request_id", "request_id_of", "REQUEST_ID_HEADER"]
