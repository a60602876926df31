"""Cron test webhooks: generic configs fired every two minutes to prove the cron path works.

A cron test config is an ordinary ``webhook_configs`` row whose name carries
the ``CRON_TEST_2M::`` prefix (scope ``generic``). Each tick fires every
enabled one whose last ``CRON_TEST`` audit row is at least two minutes old.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from app.config import CRON_TEST_SETTINGS
from app.models.db.enums import WebhookScope
from app.services import webhook_configs
from app.services.audit_log import list_audit_logs, write_audit_log
from app.services.webhook_client import DispatchResult, Sender, dispatch_webhook
from app.utils import get_logger
from app.utils.time import coerce_datetime, ensure_utc, to_iso, utc_now

logger = get_logger(__name__)

NAME_PREFIX = str(CRON_TEST_SETTINGS["name_prefix"])
REQUEST_METHOD = str(CRON_TEST_SETTINGS["request_method"])
MANUAL_REQUEST_METHOD = str(CRON_TEST_SETTINGS["manual_request_method"])
DESCRIPTION = "Cron test webhook (2 minute interval)"


@dataclass
class CronTestTickSummary:
    total: int = 0
    enabled: int = 0
    triggered: int = 0
    skipped: int = 0
    failed: int = 0
    reason_breakdown: dict[str, int] = field(default_factory=dict)

    def add_reason(self, reason: str) -> None:
        self.reason_breakdown[reason] = self.reason_breakdown.get(reason, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def prefix_name(value: str | None) -> str:
    name = (value or "").strip()
    if not name:
        return f"{NAME_PREFIX}Webhook"
    return name if name.startswith(NAME_PREFIX) else f"{NAME_PREFIX}{name}"


def display_name(name: str) -> str:
    return name[len(NAME_PREFIX):] if name.startswith(NAME_PREFIX) else name


def is_cron_test_row(row: Mapping[str, Any]) -> bool:
    return str(row.get("name") or "").strip().startswith(NAME_PREFIX) and bool(str(row.get("target_url") or "").strip())


def _present(row: Mapping[str, Any]) -> dict[str, Any]:
    return {**row, "display_name": display_name(str(row.get("name") or ""))}


def load_cron_test_configs(session: Session) -> list[dict[str, Any]]:
    return [_present(row) for row in webhook_configs.list_configs(session, limit=2000) if is_cron_test_row(row)]


def get_cron_test_config(session: Session, config_id: str) -> dict[str, Any] | None:
    row = webhook_configs.get_config(session, config_id)
    return _present(row) if row and is_cron_test_row(row) else None


def create_cron_test_config(session: Session, data: Mapping[str, Any]) -> dict[str, Any]:
    row = webhook_configs.create_config(session, {
        "name": prefix_name(data.get("name")),
        "target_url": data.get("target_url"),
        "method": data.get("method"),
        "headers": data.get("headers"),
        "enabled": data.get("enabled"),
        "scope": WebhookScope.GENERIC.value,
        "description": DESCRIPTION,
    })
    return _present(row)


def update_cron_test_config(session: Session, config_id: str, patch: Mapping[str, Any]) -> dict[str, Any]:
    if get_cron_test_config(session, config_id) is None:
        raise webhook_configs.WebhookConfigNotFound(config_id)
    values = {k: patch[k] for k in ("target_url", "method", "headers", "enabled") if k in patch}
    if patch.get("name") is not None:
        values["name"] = prefix_name(patch["name"])
    return _present(webhook_configs.update_config(session, config_id, values))


def delete_cron_test_config(session: Session, config_id: str) -> None:
    if get_cron_test_config(session, config_id) is None:
        raise webhook_configs.WebhookConfigNotFound(config_id)
    webhook_configs.delete_config(session, config_id)


def load_latest_runs(session: Session) -> dict[str, datetime]:
    """Config id -> time of its latest scheduled cron test dispatch."""
    latest: dict[str, datetime] = {}
    for row in list_audit_logs(session, method=REQUEST_METHOD, limit=5000):
        body = row.get("request_body")
        config_id = body.get("cron_test_config_id") if isinstance(body, Mapping) else None
        created_at = coerce_datetime(row.get("created_at"))
        if not isinstance(config_id, str) or created_at is None or config_id in latest:
            continue
        latest[config_id] = created_at
    return latest


async def dispatch_cron_test(
    session: Session,
    config: Mapping[str, Any],
    request_method: str,
    *,
    sender: Optional[Sender] = None,
    now: Optional[datetime] = None,
) -> DispatchResult:
    sender = sender or dispatch_webhook
    triggered_at = to_iso(now or utc_now())
    url = str(config.get("target_url") or "")
    method = "GET" if str(config.get("method") or "").upper() == "GET" else "POST"
    headers = {
        **webhook_configs.parse_headers(config.get("headers") or {}),
        str(CRON_TEST_SETTINGS["header"]): "true",
    }
    payload = {
        "client_id": str(CRON_TEST_SETTINGS["client_id"]),
        "cron_test_config_id": config.get("id"),
        "triggered_at": triggered_at,
    }
    try:
        result = await sender(url=url, method=method, headers=headers, payload=payload, triggered_at=triggered_at)
    except Exception as e:
        logger.warning("Cron test dispatch raised", config_id=config.get("id"), error=str(e))
        result = DispatchResult(ok=False, status=0, body=str(e) or "Cron test webhook dispatch failed", url=url, method=method, duration_ms=0)

    write_audit_log(
        session,
        url=url,
        method=request_method,
        headers=headers,
        body=payload,
        response_status=result.status or None,
        response_body=result.body,
        duration_ms=result.duration_ms,
        created_by=None,
    )
    return result


async def trigger_cron_test_now(session: Session, config_id: str, *, sender: Optional[Sender] = None) -> DispatchResult:
    config = get_cron_test_config(session, config_id)
    if config is None:
        raise webhook_configs.WebhookConfigNotFound(config_id)
    return await dispatch_cron_test(session, config, MANUAL_REQUEST_METHOD, sender=sender)


async def run_cron_test_tick(session: Session, now: Optional[datetime] = None, sender: Optional[Sender] = None) -> CronTestTickSummary:
    now = ensure_utc(now or utc_now())
    configs = load_cron_test_configs(session)
    latest_runs = load_latest_runs(session)
    interval = timedelta(minutes=int(CRON_TEST_SETTINGS["interval_minutes"]))  # type: ignore[call-overload]

    summary = CronTestTickSummary(total=len(configs), enabled=sum(1 for c in configs if webhook_configs.is_enabled_row(c)))
    for config in configs:
        if not webhook_configs.is_enabled_row(config):
            summary.skipped += 1
            summary.add_reason("disabled")
            continue
        last_run = latest_runs.get(config["id"])
        if last_run is not None and now < last_run + interval:
            summary.skipped += 1
            summary.add_reason("not_due_yet")
            continue

        result = await dispatch_cron_test(session, config, REQUEST_METHOD, sender=sender, now=now)
        if result.ok:
            summary.triggered += 1
        else:
            summary.failed += 1
            summary.add_reason("dispatch_failed")

    logger.info("Cron test tick finished", **summary.to_dict())
    return summary


__all__ = [
    "CronTestTickSummary",
    "NAME_PREFIX",
    "prefix_name",
    "display_name",
    "load_cron_test_configs",
    "get_cron_test_config",
    "create_cron_test_config",
    "update_cron_test_config",
    "delete_cron_test_config",
    "trigger_cron_test_now",
    "run_cron_test_tick",
]
