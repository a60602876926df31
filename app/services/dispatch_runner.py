"""Automation dispatch: scheduled ticks, manual switches, activations.

Scheduler tick (``run_scheduler_tick``), per subscription with status
active/trialing:
1. Eligibility: the current period (when known) must not have ended and the
   subscription must point at a store; otherwise ``subscription_inactive_or_expired``.
2. Slot due time = last successful run for the store + plan interval; else
   the latest scheduled slot recorded in a key; else now. A slot whose job
   failed ``max_retries`` times is advanced one interval at a time.
3. ``now < slot due`` -> ``not_due_yet``.
4. Webhook resolution: ``stores.active_webhook_config_id`` -> newest binding in
   the audit log -> the only enabled automation config, when exactly one
   exists. Nothing -> ``no_active_webhook_config``; a disabled/generic
   config -> ``inactive_or_invalid_webhook_config`` (both recorded as skipped
   job rows under the slot key).
5. Existing slot job: processing/success -> ``duplicate_slot``; failed ->
   wait the retry ladder (1, 2, 4, 8, 16 min) -> ``retry_backoff``; skipped ->
   reused. Reopening is a conditional update on the status and retry count
   read by this tick; losing it means another tick took the slot ->
   ``duplicate_slot``. Otherwise a new job row is inserted; a unique key
   violation means another tick owns the slot -> ``duplicate_slot``.
6. Open circuit for the target host -> ``circuit_open``.
7. Dispatch, update the job to success/failed (retry_count + 1 on failure)
   and write an audit row either way.

Manual switch and activation use the same job/audit plumbing with their own
idempotency keys (minute bucket / billing period).
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import SCHEDULER_SETTINGS
from app.models.db.enums import SchedulerJobStatus, TriggerType, WebhookScope
from app.models.db.scheduler_jobs import SchedulerJob
from app.models.db.stores import Store
from app.models.db.subscriptions import Subscription
from app.services import scheduler_jobs
from app.services.audit_log import (
    ACTIVATION_MAPPING_SOURCE,
    MAPPING_SOURCE,
    load_store_mappings,
    persist_store_mapping,
    write_audit_log,
)
from app.services.keyspace import (
    derive_activation_key,
    derive_manual_switch_key,
    derive_scheduled_key,
    extract_scheduled_slot_time,
    normalize_plan,
    plan_window_hours,
)
from app.services.schema_fallback import (
    SchemaFallbackExhausted,
    drop_fields,
    select_with_fallback,
    update_with_fallback,
)
from app.services.storage import CasOutcome, compare_and_swap
from app.services.subscriptions import active_subscription_for_store, is_subscription_active, resolve_store_id
from app.services.webhook_client import DispatchResult, Sender, breaker_key, dispatch_webhook
from app.services.webhook_configs import (
    WebhookConfigNotFound,
    get_config,
    is_automation_row,
    is_enabled_row,
    list_configs,
)
from app.utils import get_logger, log_business_event
from app.utils.backoff import ladder_step
from app.utils.circuit_breaker import GLOBAL_CIRCUIT_BREAKER, CircuitBreaker
from app.utils.time import ensure_utc, to_iso, utc_now

logger = get_logger(__name__)

_STORES = Store.__table__

STORE_COLUMN_SETS: list[list[str]] = [
    ["id", "user_id", "product_id", "active_webhook_config_id"],
    ["id", "user_id", "active_webhook_config_id"],
    ["id", "user_id", "product_id"],
    ["id", "user_id"],
]


class StoreNotFound(LookupError):
    pass


class TriggerRejected(ValueError):
    """Request is well-formed but the store/webhook is not in a state that allows it."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


class DuplicateTriggerError(Exception):
    """The same trigger was already handled inside its idempotency window."""

    def __init__(self, idempotency_key: str):
        super().__init__("The same switch request was already processed within this minute")
        self.idempotency_key = idempotency_key


@dataclass
class SlotResult:
    subscription_id: str
    store_id: str | None
    outcome: str
    reason: str | None = None
    idempotency_key: str | None = None
    response_status: int | None = None


@dataclass
class TickSummary:
    total: int = 0
    triggered: int = 0
    skipped: int = 0
    failed: int = 0
    reason_breakdown: dict[str, int] = field(default_factory=dict)
    results: list[SlotResult] = field(default_factory=list)

    def _reason(self, reason: str) -> None:
        self.reason_breakdown[reason] = self.reason_breakdown.get(reason, 0) + 1

    def skip(self, subscription_id: str, store_id: str | None, reason: str, key: str | None = None) -> None:
        self.skipped += 1
        self._reason(reason)
        self.results.append(SlotResult(subscription_id, store_id, "skipped", reason, key))

    def fail(self, subscription_id: str, store_id: str | None, reason: str, key: str | None = None, status: int | None = None) -> None:
        self.failed += 1
        self._reason(reason)
        self.results.append(SlotResult(subscription_id, store_id, "failed", reason, key, status))

    def trigger(self, subscription_id: str, store_id: str, key: str, status: int | None) -> None:
        self.triggered += 1
        self.results.append(SlotResult(subscription_id, store_id, "triggered", None, key, status))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TriggerOutcome:
    status: str
    idempotency_key: str
    store_id: str
    webhook_config_id: str | None = None
    scheduler_job_id: str | None = None
    response_status: int | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ------------------------------------------------------------------ #
# Store binding
# ------------------------------------------------------------------ #

def load_store(session: Session, store_id: str) -> dict[str, Any] | None:
    outcome = select_with_fallback(session, _STORES, STORE_COLUMN_SETS, [_STORES.c.id == store_id], limit=1)
    return outcome.rows[0] if outcome.rows else None


def load_store_bindings(session: Session, store_ids: list[str]) -> dict[str, str | None]:
    if not store_ids:
        return {}
    outcome = select_with_fallback(
        session,
        _STORES,
        [["id", "active_webhook_config_id"], ["id"]],
        [_STORES.c.id.in_(store_ids)],
    )
    return {row["id"]: row.get("active_webhook_config_id") for row in outcome.rows}


def bind_store_to_webhook(
    session: Session,
    store_id: str,
    webhook_config_id: str,
    *,
    product_id: str | None,
    actor_id: str | None,
    now: datetime,
) -> bool:
    """Point the store at a webhook; False when the stores table has no binding columns."""
    values: dict[str, Any] = {
        "active_webhook_config_id": webhook_config_id,
        "automation_updated_at": now,
        "automation_updated_by": actor_id,
    }
    if product_id:
        values = {"product_id": product_id, **values}
    candidates = drop_fields(values, ["product_id"], ["automation_updated_by"], ["automation_updated_at"])
    try:
        update_with_fallback(session, _STORES, [_STORES.c.id == store_id], candidates)
    except SchemaFallbackExhausted:
        logger.warning("Stores table has no webhook binding columns; relying on mapping log", store_id=store_id)
        return False
    return True


def is_active_automation(config: Mapping[str, Any] | None) -> bool:
    return bool(config) and is_enabled_row(config) and is_automation_row(config)  # type: ignore[arg-type]


def resolve_store_webhook(
    store_id: str,
    explicit_id: str | None,
    mapped_ids: list[str],
    configs_by_id: Mapping[str, Mapping[str, Any]],
) -> str | None:
    if explicit_id and is_active_automation(configs_by_id.get(explicit_id)):
        return explicit_id
    for candidate in mapped_ids:
        if is_active_automation(configs_by_id.get(candidate)):
            return candidate
    active = [cid for cid, cfg in configs_by_id.items() if is_active_automation(cfg)]
    return active[0] if len(active) == 1 else None


# ------------------------------------------------------------------ #
# Dispatch plumbing
# ------------------------------------------------------------------ #

async def _send(
    session: Session,
    sender: Sender,
    breaker: CircuitBreaker,
    config: Mapping[str, Any],
    body: dict[str, Any],
    idempotency_key: str,
    triggered_at: str,
    created_by: str | None,
) -> DispatchResult:
    url = str(config.get("target_url") or "")
    method = "GET" if str(config.get("method") or "").upper() == "GET" else "POST"
    headers = dict(config.get("headers") or {})
    try:
        result = await sender(
            url=url,
            method=method,
            headers=headers,
            payload=body,
            idempotency_key=idempotency_key,
            triggered_at=triggered_at,
        )
    except Exception as e:
        logger.error("Webhook dispatch raised", url=url, idempotency_key=idempotency_key, error=str(e), exc_info=True)
        result = DispatchResult(ok=False, status=0, body=str(e) or type(e).__name__, url=url, method=method, duration_ms=0)

    if result.ok:
        breaker.record_success(breaker_key(url))
    else:
        breaker.record_failure(breaker_key(url))

    write_audit_log(
        session,
        url=url,
        method=method,
        headers=headers,
        body=body,
        response_status=result.status or None,
        response_body=result.body,
        duration_ms=result.duration_ms,
        created_by=created_by,
    )
    return result


def _finish_job(session: Session, job_id: str | None, result: DispatchResult, retry_count: int, now: datetime) -> None:
    if not job_id:
        return
    scheduler_jobs.update_job(session, job_id, {
        "status": SchedulerJobStatus.SUCCESS.value if result.ok else SchedulerJobStatus.FAILED.value,
        "response_status": result.status or None,
        "response_payload": result.body,
        "error_message": None if result.ok else (result.body or f"HTTP {result.status}"),
        "retry_count": retry_count if result.ok else retry_count + 1,
        "run_at": now,
        "updated_at": now,
    })


def _reopen_job(session: Session, job: Mapping[str, Any], now: datetime) -> CasOutcome:
    """Move a failed or skipped slot job back to processing.

    Conditional on the status and retry count read by this tick, so two ticks
    holding the same snapshot cannot both dispatch the slot.
    """
    expected: dict[str, Any] = {"status": job.get("status")}
    if "retry_count" in job:
        expected["retry_count"] = job.get("retry_count")
    outcome = compare_and_swap(
        session,
        SchedulerJob.__table__,
        job["id"],
        expected,
        {"status": SchedulerJobStatus.PROCESSING.value, "run_at": now},
    )
    if outcome is CasOutcome.APPLIED:
        scheduler_jobs.update_job(session, job["id"], {"error_message": None, "updated_at": now})
    else:
        logger.info("Slot job already reopened by another tick", job_id=job["id"], idempotency_key=job.get("idempotency_key"))
    return outcome


# ------------------------------------------------------------------ #
# Scheduler tick
# ------------------------------------------------------------------ #

def _last_success_at(jobs: list[dict[str, Any]], store_id: str) -> datetime | None:
    for job in jobs:
        if not scheduler_jobs.matches_store(job, store_id):
            continue
        if (job.get("status") or "").lower() != SchedulerJobStatus.SUCCESS.value:
            continue
        if scheduler_jobs.job_kind(job) is None:
            continue
        moment = scheduler_jobs.job_moment(job)
        if moment is not None:
            return moment
    return None


def _latest_scheduled_slot(jobs: list[dict[str, Any]], store_id: str) -> datetime | None:
    latest: datetime | None = None
    for job in jobs:
        if not scheduler_jobs.matches_store(job, store_id) or scheduler_jobs.job_kind(job) != TriggerType.SCHEDULED:
            continue
        slot = extract_scheduled_slot_time(job.get("idempotency_key"))
        if slot is not None and (latest is None or slot > latest):
            latest = slot
    return latest


def _find_slot_job(jobs: list[dict[str, Any]], key: str) -> dict[str, Any] | None:
    for job in jobs:
        if job.get("idempotency_key") == key:
            return job
    return None


def _record_skipped_slot(session: Session, subscription: Subscription, store_id: str, key: str, reason: str, webhook_config_id: str | None, now: datetime) -> None:
    scheduler_jobs.insert_job(session, {
        "subscription_id": subscription.id,
        "user_id": subscription.user_id,
        "plan": normalize_plan(subscription.plan),
        "status": SchedulerJobStatus.SKIPPED.value,
        "idempotency_key": key,
        "run_at": now,
        "store_id": store_id,
        "webhook_config_id": webhook_config_id,
        "trigger_type": TriggerType.SCHEDULED.value,
        "request_payload": {"client_id": store_id},
        "error_message": reason,
        "retry_count": 0,
        "updated_at": now,
    })


async def _run_subscription_slot(
    session: Session,
    subscription: Subscription,
    *,
    now: datetime,
    jobs: list[dict[str, Any]],
    bindings: Mapping[str, str | None],
    mappings: Mapping[str, list[str]],
    configs_by_id: Mapping[str, Mapping[str, Any]],
    sender: Sender,
    breaker: CircuitBreaker,
    summary: TickSummary,
) -> None:
    store_id = resolve_store_id(subscription)
    if not store_id or not is_subscription_active(subscription, now):
        summary.skip(subscription.id, store_id, "subscription_inactive_or_expired")
        return

    plan = normalize_plan(subscription.plan)
    interval = timedelta(hours=plan_window_hours(plan))
    anchor = _last_success_at(jobs, store_id)
    if anchor is not None:
        slot_due = anchor + interval
    else:
        slot_due = _latest_scheduled_slot(jobs, store_id) or now

    key = derive_scheduled_key(subscription.id, store_id, plan, slot_due)
    slot_job = _find_slot_job(jobs, key)
    max_retries = int(SCHEDULER_SETTINGS["max_retries"])  # type: ignore[arg-type]
    while slot_job and (slot_job.get("status") or "").lower() == SchedulerJobStatus.FAILED.value and int(slot_job.get("retry_count") or 0) >= max_retries:
        slot_due = slot_due + interval
        key = derive_scheduled_key(subscription.id, store_id, plan, slot_due)
        slot_job = _find_slot_job(jobs, key)

    if now < slot_due:
        summary.skip(subscription.id, store_id, "not_due_yet", key)
        return

    config_id = resolve_store_webhook(store_id, bindings.get(store_id), list(mappings.get(store_id, [])), configs_by_id)
    if not config_id:
        _record_skipped_slot(session, subscription, store_id, key, "no_active_webhook_config", None, now)
        summary.skip(subscription.id, store_id, "no_active_webhook_config", key)
        return
    config = configs_by_id.get(config_id)
    if not is_active_automation(config):
        _record_skipped_slot(session, subscription, store_id, key, "inactive_or_invalid_webhook_config", config_id, now)
        summary.skip(subscription.id, store_id, "inactive_or_invalid_webhook_config", key)
        return
    assert config is not None

    existing_status = (slot_job.get("status") or "").lower() if slot_job else ""
    if existing_status in (SchedulerJobStatus.PROCESSING.value, SchedulerJobStatus.SUCCESS.value):
        summary.skip(subscription.id, store_id, "duplicate_slot", key)
        return

    retry_count = int(slot_job.get("retry_count") or 0) if slot_job else 0
    if slot_job and existing_status == SchedulerJobStatus.FAILED.value:
        last_attempt = scheduler_jobs.job_moment(slot_job) or now
        wait = ladder_step(SCHEDULER_SETTINGS["retry_backoff_minutes"], retry_count)  # type: ignore[arg-type]
        if now < last_attempt + timedelta(minutes=wait):
            summary.skip(subscription.id, store_id, "retry_backoff", key)
            return

    allowed, reason = breaker.allow_call(breaker_key(str(config.get("target_url") or "")))
    if not allowed:
        summary.skip(subscription.id, store_id, reason or "circuit_open", key)
        return

    if slot_job:
        job_id: str | None = slot_job["id"]
        if _reopen_job(session, slot_job, now) is CasOutcome.LOST_RACE:
            summary.skip(subscription.id, store_id, "duplicate_slot", key)
            return
    else:
        job_id = scheduler_jobs.insert_job(session, {
            "subscription_id": subscription.id,
            "user_id": subscription.user_id,
            "plan": plan,
            "status": SchedulerJobStatus.PROCESSING.value,
            "idempotency_key": key,
            "run_at": now,
            "store_id": store_id,
            "webhook_config_id": config_id,
            "trigger_type": TriggerType.SCHEDULED.value,
            "request_payload": {"client_id": store_id},
            "error_message": None,
            "retry_count": 0,
            "updated_at": now,
        })
        if job_id is None:
            summary.skip(subscription.id, store_id, "duplicate_slot", key)
            return

    triggered_at = to_iso(now)
    body = {
        "client_id": store_id,
        "trigger_type": TriggerType.SCHEDULED.value,
        "subscription_id": subscription.id,
        "webhook_config_id": config_id,
        "idempotency_key": key,
        "slot_due_at": to_iso(slot_due),
        "attempt": retry_count + 1,
        "triggered_at": triggered_at,
    }
    result = await _send(session, sender, breaker, config, body, key, triggered_at, subscription.user_id)
    _finish_job(session, job_id, result, retry_count, now)
    if result.ok:
        summary.trigger(subscription.id, store_id, key, result.status)
    else:
        summary.fail(subscription.id, store_id, "dispatch_failed", key, result.status)


async def run_scheduler_tick(
    session: Session,
    now: Optional[datetime] = None,
    sender: Optional[Sender] = None,
    *,
    breaker: Optional[CircuitBreaker] = None,
) -> TickSummary:
    now = ensure_utc(now or utc_now())
    sender = sender or dispatch_webhook
    breaker = breaker or GLOBAL_CIRCUIT_BREAKER
    statuses = list(SCHEDULER_SETTINGS["active_subscription_statuses"])  # type: ignore[call-overload]

    subscriptions = session.execute(
        select(Subscription).where(Subscription.status.in_(statuses)).order_by(Subscription.created_at, Subscription.id).limit(1000)
    ).scalars().all()
    summary = TickSummary(total=len(subscriptions))
    if not subscriptions:
        return summary

    store_ids = sorted({sid for sid in (resolve_store_id(s) for s in subscriptions) if sid})
    jobs_by_subscription = scheduler_jobs.load_jobs_by_subscription(session, [s.id for s in subscriptions])
    bindings = load_store_bindings(session, store_ids)
    mappings = load_store_mappings(session, store_ids)
    configs_by_id = {row["id"]: row for row in list_configs(session, limit=1000)}

    for subscription in subscriptions:
        try:
            await _run_subscription_slot(
                session,
                subscription,
                now=now,
                jobs=jobs_by_subscription.get(subscription.id, []),
                bindings=bindings,
                mappings=mappings,
                configs_by_id=configs_by_id,
                sender=sender,
                breaker=breaker,
                summary=summary,
            )
        except Exception as e:
            # One broken subscription must not stop the rest of the tick.
            session.rollback()
            logger.error("Scheduler slot failed", subscription_id=subscription.id, error=str(e), exc_info=True)
            summary.fail(subscription.id, resolve_store_id(subscription), "internal_error")

    logger.info(
        "Scheduler tick finished",
        total=summary.total,
        triggered=summary.triggered,
        skipped=summary.skipped,
        failed=summary.failed,
        reasons=summary.reason_breakdown,
    )
    return summary


# ------------------------------------------------------------------ #
# Manual switch
# ------------------------------------------------------------------ #

async def trigger_manual_switch(
    session: Session,
    store_id: str,
    webhook_config_id: str,
    actor_id: str | None,
    *,
    now: Optional[datetime] = None,
    sender: Optional[Sender] = None,
    breaker: Optional[CircuitBreaker] = None,
) -> TriggerOutcome:
    now = ensure_utc(now or utc_now())
    sender = sender or dispatch_webhook
    breaker = breaker or GLOBAL_CIRCUIT_BREAKER

    store = load_store(session, store_id)
    if store is None:
        raise StoreNotFound(store_id)
    subscription = active_subscription_for_store(session, store_id, now)
    if subscription is None:
        raise TriggerRejected("SUBSCRIPTION_INACTIVE", "No active or trialing subscription for this store")

    config = get_config(session, webhook_config_id)
    if config is None:
        raise WebhookConfigNotFound(webhook_config_id)
    if not is_enabled_row(config):
        raise TriggerRejected("WEBHOOK_DISABLED", f"Target webhook is disabled: {config.get('name')} ({webhook_config_id})")
    scope = config.get("scope")
    if scope and scope != WebhookScope.AUTOMATION.value:
        raise TriggerRejected("WEBHOOK_SCOPE_INVALID", f"Target webhook is not an automation webhook: {config.get('name')} ({webhook_config_id})")

    key = derive_manual_switch_key(store_id, webhook_config_id, now)
    existing = scheduler_jobs.find_job_by_key(session, key)
    if existing and (existing.get("status") or "").lower() in (SchedulerJobStatus.PROCESSING.value, SchedulerJobStatus.SUCCESS.value):
        raise DuplicateTriggerError(key)

    bind_store_to_webhook(
        session,
        store_id,
        webhook_config_id,
        product_id=config.get("product_id") or store.get("product_id"),
        actor_id=actor_id,
        now=now,
    )
    persist_store_mapping(
        session,
        store_id=store_id,
        webhook_config_id=webhook_config_id,
        idempotency_key=key,
        created_by=actor_id,
        source=MAPPING_SOURCE,
    )

    retry_count = int(existing.get("retry_count") or 0) if existing else 0
    if existing:
        job_id: str | None = existing["id"]
        if _reopen_job(session, existing, now) is CasOutcome.LOST_RACE:
            raise DuplicateTriggerError(key)
    else:
        job_id = scheduler_jobs.insert_job(session, {
            "subscription_id": subscription.id,
            "user_id": store.get("user_id"),
            "plan": normalize_plan(subscription.plan),
            "status": SchedulerJobStatus.PROCESSING.value,
            "idempotency_key": key,
            "run_at": now,
            "store_id": store_id,
            "webhook_config_id": webhook_config_id,
            "trigger_type": TriggerType.MANUAL_SWITCH.value,
            "request_payload": {"client_id": store_id},
        })
        if job_id is None:
            raise DuplicateTriggerError(key)

    triggered_at = to_iso(now)
    body = {
        "client_id": store_id,
        "trigger_type": TriggerType.MANUAL_SWITCH.value,
        "subscription_id": subscription.id,
        "webhook_config_id": webhook_config_id,
        "idempotency_key": key,
        "triggered_at": triggered_at,
    }
    result = await _send(session, sender, breaker, config, body, key, triggered_at, actor_id)
    _finish_job(session, job_id, result, retry_count, now)

    log_business_event(
        "automation_manual_switch",
        {"store_id": store_id, "webhook_config_id": webhook_config_id, "ok": result.ok, "status": result.status},
        user_id=actor_id,
    )
    return TriggerOutcome(
        status="triggered" if result.ok else "failed",
        idempotency_key=key,
        store_id=store_id,
        webhook_config_id=webhook_config_id,
        scheduler_job_id=job_id,
        response_status=result.status,
        reason=None if result.ok else "dispatch_failed",
    )


# ------------------------------------------------------------------ #
# Activation
# ------------------------------------------------------------------ #

def _config_for_product(configs_by_id: Mapping[str, Mapping[str, Any]], product_id: str | None) -> str | None:
    if not product_id:
        return None
    for config_id, config in configs_by_id.items():
        if config.get("product_id") == product_id and is_active_automation(config):
            return config_id
    return None


async def trigger_activation(
    session: Session,
    subscription_id: str,
    store_id: str | None = None,
    *,
    now: Optional[datetime] = None,
    sender: Optional[Sender] = None,
    breaker: Optional[CircuitBreaker] = None,
) -> TriggerOutcome:
    """First dispatch after a subscription is paid; at most once per billing period."""
    now = ensure_utc(now or utc_now())
    sender = sender or dispatch_webhook
    breaker = breaker or GLOBAL_CIRCUIT_BREAKER

    subscription = session.get(Subscription, subscription_id)
    if subscription is None:
        raise LookupError(f"Subscription {subscription_id} not found")
    store_id = store_id or resolve_store_id(subscription)
    if not store_id:
        raise TriggerRejected("STORE_MISSING", "Subscription is not linked to a store")

    key = derive_activation_key(subscription.id, store_id, subscription.current_period_end)
    if not is_subscription_active(subscription, now):
        return TriggerOutcome(status="skipped", idempotency_key=key, store_id=store_id, reason="subscription_inactive_or_expired")

    store = load_store(session, store_id)
    if store is None:
        raise StoreNotFound(store_id)
    configs_by_id = {row["id"]: row for row in list_configs(session, limit=1000)}

    config_id: str | None = None
    explicit = store.get("active_webhook_config_id")
    if explicit and is_active_automation(configs_by_id.get(explicit)):
        config_id = explicit
    if not config_id:
        config_id = _config_for_product(configs_by_id, store.get("product_id"))
        if config_id:
            bind_store_to_webhook(session, store_id, config_id, product_id=store.get("product_id"), actor_id=subscription.user_id, now=now)
            persist_store_mapping(
                session,
                store_id=store_id,
                webhook_config_id=config_id,
                idempotency_key=key,
                created_by=subscription.user_id,
                source=ACTIVATION_MAPPING_SOURCE,
            )
    if not config_id:
        mapped = load_store_mappings(session, [store_id]).get(store_id, [])
        config_id = resolve_store_webhook(store_id, None, mapped, configs_by_id)

    base_job = {
        "subscription_id": subscription.id,
        "user_id": subscription.user_id,
        "plan": normalize_plan(subscription.plan),
        "idempotency_key": key,
        "run_at": now,
        "store_id": store_id,
        "webhook_config_id": config_id,
        "trigger_type": TriggerType.ACTIVATION.value,
        "request_payload": {"client_id": store_id},
    }
    if not config_id:
        scheduler_jobs.insert_job(session, {**base_job, "status": SchedulerJobStatus.SKIPPED.value, "error_message": "no_active_webhook_config"})
        return TriggerOutcome(status="skipped", idempotency_key=key, store_id=store_id, reason="no_active_webhook_config")

    job_id = scheduler_jobs.insert_job(session, {**base_job, "status": SchedulerJobStatus.PROCESSING.value})
    if job_id is None:
        return TriggerOutcome(status="skipped", idempotency_key=key, store_id=store_id, webhook_config_id=config_id, reason="duplicate_activation")

    triggered_at = to_iso(now)
    body = {
        "client_id": store_id,
        "trigger_type": TriggerType.ACTIVATION.value,
        "subscription_id": subscription.id,
        "webhook_config_id": config_id,
        "idempotency_key": key,
        "triggered_at": triggered_at,
    }
    result = await _send(session, sender, breaker, configs_by_id[config_id], body, key, triggered_at, subscription.user_id)
    _finish_job(session, job_id, result, 0, now)
    return TriggerOutcome(
        status="triggered" if result.ok else "failed",
        idempotency_key=key,
        store_id=store_id,
        webhook_config_id=config_id,
        scheduler_job_id=job_id,
        response_status=result.status,
        reason=None if result.ok else "dispatch_failed",
    )


__all__ = [
    "TickSummary",
    "SlotResult",
    "TriggerOutcome",
    "StoreNotFound",
    "TriggerRejected",
    "DuplicateTriggerError",
    "run_scheduler_tick",
    "trigger_manual_switch",
    "trigger_activation",
    "resolve_store_webhook",
    "bind_store_to_webhook",
    "load_store",
]
