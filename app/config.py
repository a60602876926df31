"""Core application configuration & tunable automation rules.

Everything that may need adjusting between deployments (claim staleness
windows, plan intervals, retry ladders, outbound timeouts, ledger scan caps)
is centralized here so it can be changed without diving into service logic.
Values are read from the environment once at import time; the dicts are
mutable on purpose so tests can monkeypatch individual entries.
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: str = "false") -> bool:
	return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


APP_NAME: str = "listflow-automation-backend"
APP_VERSION: str = "1.0.0"

# Public base URL of this service (used when registering the cron-job.org tick)
APP_BASE_URL: str = os.getenv("APP_BASE_URL", "http://localhost:8000").rstrip("/")

# Shared secret accepted on the cron-triggered endpoints (X-Cron-Secret header)
CRON_SECRET: str | None = os.getenv("CRON_SECRET") or None

# ------------------------------- Job Queue -------------------------------- #
JOB_QUEUE_SETTINGS: dict[str, object] = {
	"job_type": "LISTING_CREATE",
	# Statuses a worker may pick up directly.
	"pending_statuses": ["queued", "pending", "retry", "failed_retryable"],
	# A processing claim older than this is considered abandoned by its worker.
	"stale_processing_seconds": 60,
	# Same worker may re-claim its own job after this (extension reload).
	"self_retry_seconds": 3,
	# Ownerless processing rows older than this are moved to failed.
	"stuck_recovery_seconds": 120,
	"stuck_recovery_message": "Recovered from stuck processing lock",
	# Candidate rows read per claim round and rounds before giving up.
	"claim_batch_size": 25,
	"claim_rounds": 3,
}

# ------------------------------- Scheduler -------------------------------- #
SCHEDULER_SETTINGS: dict[str, object] = {
	# Listing interval per plan in hours (lower = more frequent).
	"plan_window_hours": {
		"turbo": 2,
		"pro": 4,
		"standard": 8,
	},
	"default_plan": "standard",
	"active_subscription_statuses": ["active", "trialing"],
	# Retry ladder for failed slot dispatches, in minutes (index = retry_count).
	"retry_backoff_minutes": [1, 2, 4, 8, 16],
	"max_retries": 5,
	"trigger_header": "x-listflow-idempotency-key",
	"triggered_at_header": "x-listflow-triggered-at",
	# Audit-log URL used to persist store -> webhook bindings when the
	# stores table has no active_webhook_config_id column yet.
	"store_mapping_source": "store-webhook-mapping",
	"store_mapping_method": "STORE_WEBHOOK_MAP",
}

# ------------------------------- Dispatch --------------------------------- #
DISPATCH_SETTINGS: dict[str, float | int] = {
	"timeout_seconds": float(os.getenv("DISPATCH_TIMEOUT_SECONDS", "15")),
	# Response bodies longer than this are truncated before storage.
	"max_response_body_chars": 4000,
}

# ------------------------------- Cron Tests ------------------------------- #
CRON_TEST_SETTINGS: dict[str, object] = {
	"name_prefix": "CRON_TEST_2M::",
	"interval_minutes": 2,
	"scope": "generic",
	"request_method": "CRON_TEST",
	"manual_request_method": "CRON_TEST_MANUAL",
	"header": "x-listflow-cron-test",
	"client_id": "cron-test",
}

# ------------------------------ cron-job.org ------------------------------ #
CRON_JOB_ORG_SETTINGS: dict[str, object] = {
	"api_base_url": os.getenv("CRON_JOB_ORG_API_URL", "https://api.cron-job.org").rstrip("/"),
	"api_key": os.getenv("CRON_JOB_ORG_API_KEY") or None,
	"job_title": "Listflow Scheduler Tick",
	"tick_path": "/api/v1/scheduler/tick",
	"schedule_minutes": 1,
	"timeout_seconds": 15.0,
	# 429 retry waits follow the backoff helper: 1s, 2s, 4s.
	"rate_limit_retries": 3,
	"lifecycle_cooldown_seconds": 300,
}

# --------------------------------- Stripe --------------------------------- #
STRIPE_SETTINGS: dict[str, object] = {
	"active_mode": (os.getenv("STRIPE_MODE", "live").strip().lower() or "live"),
	"page_size": 100,
	"max_invoice_pages": 100,
}

# ----------------------------- Reconciliation ----------------------------- #
RECONCILIATION_SETTINGS: dict[str, int] = {
	"default_days": 180,
	"min_days": 1,
	"max_days": 3650,
	"default_max_sessions": 500,
	"min_sessions": 20,
	"max_sessions": 2000,
	"default_max_pages": 100,
	"min_pages": 1,
	"max_pages": 100,
}

# -------------------------------- Revenue --------------------------------- #
REVENUE_SETTINGS: dict[str, object] = {
	"default_months": 12,
	"min_months": 1,
	"max_months": 24,
	"paid_statuses": ["paid", "succeeded", "complete", "completed"],
	"currencies": ["usd", "try"],
	"currency_aliases": {"tl": "try"},
}

# ----------------------------- Circuit Breaker ---------------------------- #
CIRCUIT_BREAKER: dict[str, int | float] = {
	"failure_threshold": 5,          # Consecutive failures before OPEN
	"open_cooldown_seconds": 300,    # Stay OPEN for 5 minutes
	"half_open_probe_count": 3,      # Probes allowed in HALF_OPEN
}

# --------------------------------- Backoff -------------------------------- #
BACKOFF_POLICY: dict[str, int | float] = {
	"base_seconds": 1,
	"factor": 2,
	"max_seconds": 60,
	"jitter_pct": 0.10,   # +/-10% jitter
}

# ------------------------------ Rate Limiting ----------------------------- #
RATE_LIMIT_SETTINGS: dict[str, dict[str, int]] = {
	"default": {"limit": 1000, "window_seconds": 3600},
	# Extension workers poll claim/report frequently.
	"extension": {"limit": 120, "window_seconds": 60},
	# Ledger scans are expensive; keep manual triggers scarce.
	"reconciliation": {"limit": 10, "window_seconds": 60},
}

# --------------------------- Background Worker ---------------------------- #
WORKER_SETTINGS: dict[str, object] = {
	"enabled": _env_bool("DISPATCH_WORKER_ENABLED"),
	"interval_seconds": float(os.getenv("DISPATCH_WORKER_INTERVAL_SECONDS", "60")),
	"use_redis": _env_bool("USE_REDIS"),
	"redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
	"redis_health_check_timeout": 2.0,
	"lock_key": "listflow:dispatch_tick_lock",
	"lock_ttl_seconds": 55,
}

__all__ = [
	"APP_NAME",
	"APP_VERSION",
	"APP_BASE_URL",
	"CRON_SECRET",
	# Rule groups
	"JOB_QUEUE_SETTINGS",
	"SCHEDULER_SETTINGS",
	"DISPATCH_SETTINGS",
	"CRON_TEST_SETTINGS",
	"CRON_JOB_ORG_SETTINGS",
	"STRIPE_SETTINGS",
	"RECONCILIATION_SETTINGS",
	"REVENUE_SETTINGS",
	"CIRCUIT_BREAKER",
	"BACKOFF_POLICY",
	"RATE_LIMIT_SETTINGS",
	"WORKER_SETTINGS",
]
