"""Secret redaction for anything persisted to the webhook audit log."""
from __future__ import annotations

from typing import Any, Mapping

SENSITIVE_KEY_MARKERS: tuple[str, ...] = (
    "authorization",
    "token",
    "secret",
    "password",
    "cookie",
    "api-key",
    "apikey",
)
REDACTED = "[REDACTED]"


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in SENSITIVE_KEY_MARKERS)


def redact_sensitive(data: Mapping[str, Any] | None) -> dict[str, Any]:
    """Return a copy of ``data`` with sensitive values replaced, descending into nested mappings.

    Lists are copied as-is; only mapping keys are inspected.
    """
    if not data:
        return {}
    output: dict[str, Any] = {}
    for key, value in data.items():
        if is_sensitive_key(str(key)):
            output[key] = REDACTED
        elif isinstance(value, Mapping):
            output[key] = redact_sensitive(value)
        else:
            output[key] = value
    return output


__all__ = ["redact_sensitive", "is_sensitive_key", "REDACTED", "SENSITIVE_KEY_MARKERS"]
