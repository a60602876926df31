"""Webhook audit trail (webhook_logs).

Every outbound call is recorded with its request URL, method, redacted
headers, body, response status/body and duration. The same table carries
store -> webhook bindings (``request_method = STORE_WEBHOOK_MAP``) so that
databases without ``stores.active_webhook_config_id`` can still resolve which
webhook a store is switched to.
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping

from sqlalchemy.orm import Session

from app.config import SCHEDULER_SETTINGS
from app.models.db.enums import TriggerType
from app.models.db.webhook_logs import WebhookLog
from app.services.keyspace import key_kind
from app.services.schema_fallback import (
    SchemaFallbackExhausted,
    drop_fields,
    insert_with_fallback,
    select_with_fallback,
)
from app.services.webhook_client import truncate_body
from app.utils import get_logger, redact_sensitive

logger = get_logger(__name__)

_TABLE = WebhookLog.__table__

MAPPING_SOURCE = str(SCHEDULER_SETTINGS["store_mapping_source"])
ACTIVATION_MAPPING_SOURCE = f"{MAPPING_SOURCE}-activation"
MAPPING_METHOD = str(SCHEDULER_SETTINGS["store_mapping_method"])


def write_audit_log(
    session: Session,
    *,
    url: str,
    method: str,
    headers: Mapping[str, Any] | None,
    body: Mapping[str, Any] | None,
    response_status: int | None,
    response_body: str | None,
    duration_ms: int,
    created_by: str | None = None,
) -> bool:
    """Persist one dispatch audit row; returns False when the table cannot take it."""
    values = {
        "request_url": url,
        "request_method": method,
        "request_headers": redact_sensitive(headers),
        "request_body": redact_sensitive(body),
        "response_status": response_status,
        "response_body": truncate_body(response_body),
        "duration_ms": int(duration_ms),
        "created_by": created_by,
    }
    try:
        insert_with_fallback(session, _TABLE, drop_fields(values, ["created_by"], ["request_headers"], ["request_body"]))
    except SchemaFallbackExhausted as e:
        logger.warning("Audit log could not be written", url=url, method=method, error=str(e.last_error))
        return False
    return True


def persist_store_mapping(
    session: Session,
    *,
    store_id: str,
    webhook_config_id: str,
    idempotency_key: str,
    created_by: str | None,
    source: str = MAPPING_SOURCE,
) -> bool:
    payload = {
        "store_id": store_id,
        "webhook_config_id": webhook_config_id,
        "idempotency_key": idempotency_key,
    }
    full = {
        "request_url": source,
        "request_method": MAPPING_METHOD,
        "request_headers": {},
        "request_body": payload,
        "response_status": 200,
        "response_body": "mapping_saved",
        "duration_ms": 0,
        "created_by": created_by,
    }
    minimal = {"request_url": source, "request_method": MAPPING_METHOD, "request_body": payload}
    try:
        insert_with_fallback(session, _TABLE, [full, minimal])
    except SchemaFallbackExhausted as e:
        logger.warning("Store webhook mapping could not be saved", store_id=store_id, error=str(e.last_error))
        return False
    return True


def _is_binding_row(row: Mapping[str, Any]) -> bool:
    body = row.get("request_body")
    key = body.get("idempotency_key") if isinstance(body, Mapping) else None
    source = row.get("request_url")
    if source in (MAPPING_SOURCE, ACTIVATION_MAPPING_SOURCE):
        return True
    return key_kind(key if isinstance(key, str) else None) in (TriggerType.MANUAL_SWITCH, TriggerType.ACTIVATION)


def load_store_mappings(session: Session, store_ids: Iterable[str], *, limit: int = 5000) -> dict[str, list[str]]:
    """Store id -> webhook config ids from binding rows, newest first."""
    allowed = set(store_ids)
    mapping: dict[str, list[str]] = {}
    if not allowed:
        return mapping
    try:
        outcome = select_with_fallback(
            session,
            _TABLE,
            [["request_url", "request_body", "created_at"]],
            [_TABLE.c.request_method == MAPPING_METHOD],
            order_by=[_TABLE.c.created_at.desc()],
            limit=limit,
        )
    except SchemaFallbackExhausted:
        return mapping

    for row in outcome.rows:
        if not _is_binding_row(row):
            continue
        body = row.get("request_body")
        if not isinstance(body, Mapping):
            continue
        store_id = body.get("store_id")
        config_id = body.get("webhook_config_id")
        if not isinstance(store_id, str) or not isinstance(config_id, str) or store_id not in allowed:
            continue
        current = mapping.setdefault(store_id, [])
        if config_id not in current:
            current.append(config_id)
    return mapping


def list_audit_logs(session: Session, *, method: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
    where = [_TABLE.c.request_method == method] if method else []
    outcome = select_with_fallback(
        session,
        _TABLE,
        [
            ["id", "request_url", "request_method", "request_headers", "request_body", "response_status", "response_body", "duration_ms", "created_by", "created_at"],
            ["id", "request_url", "request_method", "request_body", "response_status", "response_body", "duration_ms", "created_at"],
            ["id", "request_url", "request_method", "response_status", "response_body", "duration_ms", "created_at"],
        ],
        where,
        order_by=[_TABLE.c.created_at.desc()],
        limit=limit,
    )
    return outcome.rows


__all__ = [
    "MAPPING_SOURCE",
    "ACTIVATION_MAPPING_SOURCE",
    "write_audit_log",
    "persist_store_mapping",
    "load_store_mappings",
    "list_audit_logs",
]
