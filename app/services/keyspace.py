"""Idempotency key derivation.

Keys are the only deduplication mechanism for automation triggers: the
scheduler_jobs table carries a unique index on ``idempotency_key`` and a
second insert for the same key is treated as "already handled".

Grammar: ``<kind>:<entity ids...>:<discriminator>``

* ``scheduled:{subscription}:{store}:{plan}:{slot_due_iso}``
* ``manual_switch:{store}:{webhook_config}:{minute_bucket}``
  (minute_bucket = floor(epoch_ms / 60000); retries inside the same minute collapse)
* ``activation:{subscription}:{store}:{period_end_iso | no_period}``

Identity parts may not contain ``:`` so distinct facts can never render to
the same string. Everything here is pure; ``now`` is injectable.
"""
from __future__ import annotations

import math
import re
from datetime import datetime

from app.config import SCHEDULER_SETTINGS
from app.models.db.enums import TriggerType
from app.utils.time import ensure_utc, parse_iso, to_iso, utc_now

SEPARATOR = ":"
NO_PERIOD = "no_period"
MANUAL_SWITCH_BUCKET_MS = 60_000

_LEGACY_BUCKET_RE = re.compile(r"^\d+$")


def _part(name: str, value: object) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValueError(f"{name} is required for idempotency key")
    if SEPARATOR in text:
        raise ValueError(f"{name} may not contain '{SEPARATOR}'")
    return text


def normalize_plan(plan: str | None) -> str:
    windows = SCHEDULER_SETTINGS["plan_window_hours"]
    candidate = (plan or "").strip().lower()
    return candidate if candidate in windows else str(SCHEDULER_SETTINGS["default_plan"])  # type: ignore[operator]


def plan_window_hours(plan: str | None) -> int:
    windows: dict[str, int] = SCHEDULER_SETTINGS["plan_window_hours"]  # type: ignore[assignment]
    return int(windows.get((plan or "").strip().lower(), windows[str(SCHEDULER_SETTINGS["default_plan"])]))


def derive_scheduled_key(subscription_id: str, store_id: str, plan: str, slot_due_at: datetime) -> str:
    return SEPARATOR.join([
        TriggerType.SCHEDULED.value,
        _part("subscription_id", subscription_id),
        _part("store_id", store_id),
        _part("plan", plan),
        to_iso(slot_due_at),
    ])


def derive_manual_switch_key(store_id: str, webhook_config_id: str, now: datetime | None = None) -> str:
    moment = ensure_utc(now or utc_now())
    minute_bucket = math.floor(moment.timestamp() * 1000 / MANUAL_SWITCH_BUCKET_MS)
    return SEPARATOR.join([
        TriggerType.MANUAL_SWITCH.value,
        _part("store_id", store_id),
        _part("webhook_config_id", webhook_config_id),
        str(minute_bucket),
    ])


def derive_activation_key(subscription_id: str, store_id: str, period_end: datetime | None = None) -> str:
    return SEPARATOR.join([
        TriggerType.ACTIVATION.value,
        _part("subscription_id", subscription_id),
        _part("store_id", store_id),
        to_iso(period_end) if period_end is not None else NO_PERIOD,
    ])


def extract_scheduled_slot_time(key: str | None) -> datetime | None:
    """Slot due time encoded in a scheduled key.

    Returns None (never raises) for other kinds, truncated keys, unparseable
    timestamps, and legacy keys whose discriminator was a numeric bucket.
    """
    prefix = TriggerType.SCHEDULED.value + SEPARATOR
    if not key or not key.startswith(prefix):
        return None
    parts = key.split(SEPARATOR)
    if len(parts) < 5:
        return None
    # ISO timestamps contain ':' themselves
    candidate = SEPARATOR.join(parts[4:])
    if _LEGACY_BUCKET_RE.match(candidate):
        return None
    return parse_iso(candidate)


def key_kind(key: str | None) -> TriggerType | None:
    if not key:
        return None
    head = key.split(SEPARATOR, 1)[0]
    try:
        return TriggerType(head)
    except ValueError:
        return None


def extract_store_id(key: str | None) -> str | None:
    kind = key_kind(key)
    if kind is None:
        return None
    parts = key.split(SEPARATOR)  # type: ignore[union-attr]
    index = 1 if kind == TriggerType.MANUAL_SWITCH else 2
    if len(parts) <= index or not parts[index]:
        return None
    return parts[index]


__all__ = [
    "derive_scheduled_key",
    "derive_manual_switch_key",
    "derive_activation_key",
    "extract_scheduled_slot_time",
    "extract_store_id",
    "key_kind",
    "plan_window_hours",
    "normalize_plan",
    "NO_PERIOD",
]
