"""scheduler_jobs persistence (one row per idempotency key)."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.database import new_id
from app.models.db.enums import TriggerType
from app.models.db.scheduler_jobs import SchedulerJob
from app.services.keyspace import extract_store_id, key_kind
from app.services.schema_fallback import (
    SchemaErrorKind,
    classify_db_error,
    drop_fields,
    insert_with_fallback,
    select_with_fallback,
    update_with_fallback,
)
from app.utils import get_logger
from app.utils.time import coerce_datetime

logger = get_logger(__name__)

_TABLE = SchedulerJob.__table__

JOB_COLUMN_SETS: list[list[str]] = [
    ["id", "subscription_id", "store_id", "idempotency_key", "status", "trigger_type", "run_at", "retry_count", "error_message", "created_at", "updated_at"],
    ["id", "subscription_id", "store_id", "idempotency_key", "status", "trigger_type", "run_at", "error_message", "created_at", "updated_at"],
    ["id", "subscription_id", "idempotency_key", "status", "trigger_type", "run_at", "error_message", "created_at", "updated_at"],
    ["id", "subscription_id", "idempotency_key", "status", "run_at", "error_message", "created_at", "updated_at"],
    ["id", "subscription_id", "idempotency_key", "status", "run_at", "created_at"],
]


def insert_job(session: Session, values: Mapping[str, Any]) -> str | None:
    """Insert a job row; returns its id, or None when the idempotency key already exists."""
    base = {"id": new_id(), **values}
    candidates = drop_fields(
        base,
        ["retry_count"],
        ["request_payload", "trigger_type"],
        ["store_id", "webhook_config_id"],
        ["updated_at"],
    )
    try:
        insert_with_fallback(session, _TABLE, candidates)
    except IntegrityError as exc:
        if classify_db_error(exc) is SchemaErrorKind.UNIQUE_VIOLATION:
            logger.info("Scheduler job already exists", idempotency_key=values.get("idempotency_key"))
            return None
        raise
    return base["id"]


def update_job(session: Session, job_id: str, values: Mapping[str, Any]) -> None:
    candidates = drop_fields(
        values,
        ["retry_count"],
        ["response_payload"],
        ["response_status"],
        ["run_at"],
        ["updated_at", "error_message"],
    )
    update_with_fallback(session, _TABLE, [_TABLE.c.id == job_id], candidates)


def find_job_by_key(session: Session, idempotency_key: str) -> dict[str, Any] | None:
    outcome = select_with_fallback(
        session,
        _TABLE,
        JOB_COLUMN_SETS,
        [_TABLE.c.idempotency_key == idempotency_key],
        order_by=[_TABLE.c.created_at.desc()],
        limit=1,
    )
    return outcome.rows[0] if outcome.rows else None


def load_jobs_by_subscription(session: Session, subscription_ids: Iterable[str], *, limit: int = 10000) -> dict[str, list[dict[str, Any]]]:
    """Jobs grouped per subscription, newest attempt first."""
    ids = list(dict.fromkeys(subscription_ids))
    grouped: dict[str, list[dict[str, Any]]] = {}
    if not ids:
        return grouped
    outcome = select_with_fallback(
        session,
        _TABLE,
        JOB_COLUMN_SETS,
        [_TABLE.c.subscription_id.in_(ids)],
        order_by=[_TABLE.c.run_at.desc()],
        limit=limit,
    )
    for row in outcome.rows:
        if row.get("subscription_id"):
            grouped.setdefault(row["subscription_id"], []).append(row)
    for rows in grouped.values():
        rows.sort(key=job_timestamp, reverse=True)
    return grouped


def job_moment(row: Mapping[str, Any]) -> datetime | None:
    for field in ("run_at", "updated_at", "created_at"):
        moment = coerce_datetime(row.get(field))
        if moment is not None:
            return moment
    return None


def job_timestamp(row: Mapping[str, Any]) -> float:
    moment = job_moment(row)
    return moment.timestamp() if moment else 0.0


def job_store_id(row: Mapping[str, Any]) -> str | None:
    return row.get("store_id") or extract_store_id(row.get("idempotency_key"))


def job_kind(row: Mapping[str, Any]) -> TriggerType | None:
    raw = (row.get("trigger_type") or "").strip().lower()
    try:
        return TriggerType(raw)
    except ValueError:
        return key_kind(row.get("idempotency_key"))


def matches_store(row: Mapping[str, Any], store_id: str) -> bool:
    # Legacy rows without any store hint count for every store of the subscription.
    resolved = job_store_id(row)
    return resolved == store_id if resolved else True


__all__ = [
    "JOB_COLUMN_SETS",
    "insert_job",
    "update_job",
    "find_job_by_key",
    "load_jobs_by_subscription",
    "job_timestamp",
    "job_moment",
    "job_store_id",
    "job_kind",
    "matches_store",
]
