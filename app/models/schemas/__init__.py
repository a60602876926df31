from .base import ResponseBase
from .jobs import ClaimRequest, ReportRequest, ListingJobRead, EnqueueRequest
from .webhooks import (
    WebhookConfigCreate,
    WebhookConfigUpdate,
    CronTestCreate,
    CronTestUpdate,
    AutomationSwitchRequest,
    ActivationRequest,
)
from .reconciliation import ReconciliationRequest

__all__ = [
    # Base
    "ResponseBase",

    # Jobs
    "ClaimRequest",
    "ReportRequest",
    "ListingJobRead",
    "EnqueueRequest",

    # Webhooks
    "WebhookConfigCreate",
    "WebhookConfigUpdate",
    "CronTestCreate",
    "CronTestUpdate",
    "AutomationSwitchRequest",
    "ActivationRequest",

    # Reconciliation
    "ReconciliationRequest",
]
