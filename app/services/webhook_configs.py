"""Webhook configuration CRUD with schema-tolerant writes.

Validation happens before any write:
* ``target_url`` must be an absolute http/https URL
* ``method`` is GET or POST (default POST)
* header keys must be non-empty; number/bool values are stringified, other
  non-string values are dropped
* ``scope == "automation"`` requires a ``product_id``

Writes go through ``insert_with_fallback`` / ``update_with_fallback`` with the
optional columns (description, updated_at, scope + product_id) dropped in
that order, so a database that has not been migrated yet still accepts the
config. Reads use the matching column sets and return plain dicts.

At most one enabled automation config may exist per product: checked up
front and enforced by the partial unique index; both paths raise
``DuplicateConfigError``.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Sequence
from urllib.parse import urlsplit

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.database import new_id
from app.models.db.enums import WebhookMethod, WebhookScope
from app.models.db.stores import Store
from app.models.db.webhook_configs import WebhookConfig
from app.services.schema_fallback import (
    SchemaErrorKind,
    SchemaFallbackExhausted,
    classify_db_error,
    drop_fields,
    insert_with_fallback,
    select_with_fallback,
    update_with_fallback,
)
from app.utils import get_logger
from app.utils.time import utc_now

logger = get_logger(__name__)

_TABLE = WebhookConfig.__table__

# Richest first; every set keeps the baseline columns.
CONFIG_COLUMN_SETS: list[list[str]] = [
    ["id", "name", "description", "scope", "target_url", "method", "headers", "enabled", "product_id", "created_at", "updated_at"],
    ["id", "name", "scope", "target_url", "method", "headers", "enabled", "product_id", "created_at", "updated_at"],
    ["id", "name", "scope", "target_url", "method", "headers", "enabled", "product_id", "created_at"],
    ["id", "name", "target_url", "method", "headers", "enabled", "created_at"],
]

OPTIONAL_FIELD_GROUPS: tuple[tuple[str, ...], ...] = (
    ("description",),
    ("updated_at",),
    ("scope", "product_id"),
)


class WebhookConfigValidationError(ValueError):
    pass


class WebhookConfigNotFound(LookupError):
    pass


class DuplicateConfigError(Exception):
    """Another enabled automation config already targets this product."""

    def __init__(self, product_id: str | None, message: str | None = None):
        super().__init__(message or f"An enabled automation webhook already exists for product {product_id}")
        self.product_id = product_id


def validate_target_url(value: Any) -> str:
    url = str(value or "").strip()
    if not url:
        raise WebhookConfigValidationError("target_url is required")
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise WebhookConfigValidationError("target_url must be an http or https URL")
    return url


def parse_method(value: Any) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        return WebhookMethod.POST.value
    method = str(value).strip().upper()
    if method not in (WebhookMethod.GET.value, WebhookMethod.POST.value):
        raise WebhookConfigValidationError("method must be GET or POST")
    return method


def parse_headers(value: Any) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise WebhookConfigValidationError("headers must be an object")
    headers: dict[str, str] = {}
    for key, raw in value.items():
        name = str(key).strip()
        if not name:
            raise WebhookConfigValidationError("header names must be non-empty")
        if isinstance(raw, str):
            headers[name] = raw
        elif isinstance(raw, (bool, int, float)):
            headers[name] = str(raw).lower() if isinstance(raw, bool) else str(raw)
    return headers


def parse_scope(value: Any) -> str:
    scope = str(value or WebhookScope.AUTOMATION.value).strip().lower()
    try:
        return WebhookScope(scope).value
    except ValueError:
        raise WebhookConfigValidationError("scope must be automation or generic") from None


def _clean_optional(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _require_product(scope: str | None, product_id: str | None) -> None:
    if scope == WebhookScope.AUTOMATION.value and not product_id:
        raise WebhookConfigValidationError("product_id is required for automation webhooks")


def is_automation_row(row: Mapping[str, Any]) -> bool:
    # Rows read without a scope column predate cron tests and are automation configs.
    return row.get("scope", WebhookScope.AUTOMATION.value) != WebhookScope.GENERIC.value


def is_enabled_row(row: Mapping[str, Any]) -> bool:
    return row.get("enabled") is not False and row.get("enabled") != 0


def _read(session: Session, where: Sequence[Any] = (), *, limit: int | None = None) -> list[dict[str, Any]]:
    outcome = select_with_fallback(
        session,
        _TABLE,
        CONFIG_COLUMN_SETS,
        where,
        order_by=[_TABLE.c.created_at.desc(), _TABLE.c.id],
        limit=limit,
    )
    return outcome.rows


def get_config(session: Session, config_id: str) -> dict[str, Any] | None:
    rows = _read(session, [_TABLE.c.id == config_id], limit=1)
    return rows[0] if rows else None


def list_configs(session: Session, scope: str | None = None, *, limit: int = 500) -> list[dict[str, Any]]:
    rows = _read(session, limit=limit)
    if scope:
        rows = [row for row in rows if row.get("scope", WebhookScope.AUTOMATION.value) == scope]
    return rows


def load_enabled_configs(session: Session, scope: str | None = None) -> list[dict[str, Any]]:
    """Snapshot of enabled configs for one dispatch tick."""
    return [row for row in list_configs(session, scope) if is_enabled_row(row)]


def _ensure_unique_automation(session: Session, product_id: str | None, exclude_id: str | None = None) -> None:
    if not product_id:
        return
    for row in _read(session):
        if row.get("id") == exclude_id:
            continue
        if row.get("product_id") == product_id and is_enabled_row(row) and is_automation_row(row):
            raise DuplicateConfigError(product_id)


def _raise_if_duplicate(exc: IntegrityError, product_id: str | None) -> None:
    if classify_db_error(exc) is SchemaErrorKind.UNIQUE_VIOLATION:
        raise DuplicateConfigError(product_id) from exc


def create_config(session: Session, data: Mapping[str, Any], *, now: datetime | None = None) -> dict[str, Any]:
    scope = parse_scope(data.get("scope"))
    product_id = _clean_optional(data.get("product_id"))
    _require_product(scope, product_id)
    name = _clean_optional(data.get("name"))
    if not name:
        raise WebhookConfigValidationError("name is required")
    enabled = True if data.get("enabled") is None else bool(data.get("enabled"))

    values: dict[str, Any] = {
        "id": new_id(),
        "name": name,
        "target_url": validate_target_url(data.get("target_url")),
        "method": parse_method(data.get("method")),
        "headers": parse_headers(data.get("headers")),
        "enabled": enabled,
        "description": _clean_optional(data.get("description")),
        "updated_at": now or utc_now(),
        "scope": scope,
        "product_id": product_id,
    }
    if enabled and scope == WebhookScope.AUTOMATION.value:
        _ensure_unique_automation(session, product_id)

    try:
        outcome = insert_with_fallback(session, _TABLE, drop_fields(values, *OPTIONAL_FIELD_GROUPS))
    except IntegrityError as exc:
        _raise_if_duplicate(exc, product_id)
        raise
    if outcome.degraded:
        logger.warning("Webhook config saved without optional columns", config_id=values["id"], fields=sorted(outcome.values))
    logger.info("Webhook config created", config_id=values["id"], scope=scope, product_id=product_id)
    return get_config(session, values["id"]) or outcome.values


def update_config(session: Session, config_id: str, patch: Mapping[str, Any], *, now: datetime | None = None) -> dict[str, Any]:
    current = get_config(session, config_id)
    if current is None:
        raise WebhookConfigNotFound(config_id)

    values: dict[str, Any] = {}
    if "name" in patch and patch["name"] is not None:
        name = _clean_optional(patch["name"])
        if not name:
            raise WebhookConfigValidationError("name may not be empty")
        values["name"] = name
    if "target_url" in patch and patch["target_url"] is not None:
        values["target_url"] = validate_target_url(patch["target_url"])
    if "method" in patch and patch["method"] is not None:
        values["method"] = parse_method(patch["method"])
    if "headers" in patch and patch["headers"] is not None:
        values["headers"] = parse_headers(patch["headers"])
    if "enabled" in patch and patch["enabled"] is not None:
        values["enabled"] = bool(patch["enabled"])
    if "description" in patch:
        values["description"] = _clean_optional(patch["description"])
    if "scope" in patch and patch["scope"] is not None:
        values["scope"] = parse_scope(patch["scope"])
    if "product_id" in patch:
        values["product_id"] = _clean_optional(patch["product_id"])
    if not values:
        raise WebhookConfigValidationError("No fields to update")

    merged = {**current, **values}
    scope = merged.get("scope")
    product_id = merged.get("product_id")
    _require_product(scope, product_id)
    if is_enabled_row(merged) and scope == WebhookScope.AUTOMATION.value:
        _ensure_unique_automation(session, product_id, exclude_id=config_id)

    values["updated_at"] = now or utc_now()
    candidates = [c for c in drop_fields(values, *OPTIONAL_FIELD_GROUPS) if c]
    if not candidates:
        raise WebhookConfigValidationError("None of the requested fields exist in this database")
    try:
        update_with_fallback(session, _TABLE, [_TABLE.c.id == config_id], candidates)
    except IntegrityError as exc:
        _raise_if_duplicate(exc, product_id)
        raise
    logger.info("Webhook config updated", config_id=config_id, fields=sorted(values))
    return get_config(session, config_id) or merged


def delete_config(session: Session, config_id: str) -> None:
    if get_config(session, config_id) is None:
        raise WebhookConfigNotFound(config_id)
    # Unbind stores first; databases without the binding column skip this.
    stores = Store.__table__
    try:
        update_with_fallback(
            session,
            stores,
            [stores.c.active_webhook_config_id == config_id],
            [{"active_webhook_config_id": None}],
        )
    except SchemaFallbackExhausted:
        logger.debug("Stores table has no webhook binding column", config_id=config_id)
    session.execute(delete(_TABLE).where(_TABLE.c.id == config_id))
    session.commit()
    logger.info("Webhook config deleted", config_id=config_id)


__all__ = [
    "CONFIG_COLUMN_SETS",
    "DuplicateConfigError",
    "WebhookConfigNotFound",
    "WebhookConfigValidationError",
    "create_config",
    "update_config",
    "delete_config",
    "get_config",
    "list_configs",
    "load_enabled_configs",
    "is_automation_row",
    "is_enabled_row",
    "parse_headers",
    "parse_method",
    "validate_target_url",
]
