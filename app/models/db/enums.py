"""Central Enum definitions for core domain states.

These replace scattered string literals so DB models, schemas and services
agree on one vocabulary. Columns store the plain string values, which keeps
rows readable for tools that share the database.
"""
from __future__ import annotations
import enum


class UserRole(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class ListingJobStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SchedulerJobStatus(str, enum.Enum):
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class TriggerType(str, enum.Enum):
    SCHEDULED = "scheduled"
    MANUAL_SWITCH = "manual_switch"
    ACTIVATION = "activation"


class WebhookScope(str, enum.Enum):
    GENERIC = "generic"
    AUTOMATION = "automation"


class WebhookMethod(str, enum.Enum):
    GET = "GET"
    POST = "POST"


class PaymentStatus(str, enum.Enum):
    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"


class LedgerMode(str, enum.Enum):
    LIVE = "live"
    TEST = "test"


__all__ = [
    "UserRole",
    "ListingJobStatus",
    "SchedulerJobStatus",
    "TriggerType",
    "WebhookScope",
    "WebhookMethod",
    "PaymentStatus",
    "LedgerMode",
]
