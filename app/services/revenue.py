"""Monthly recurring revenue trend.

Sources, merged with local rows taking precedence:
* local ``payments`` rows that are recurring (carry a subscription id),
  paid-like (paid/succeeded/complete/completed) and positive;
* paid ledger invoices per mode that belong to a subscription, dropped when
  their invoice id is already present locally.

Records are bucketed by UTC calendar month over the last ``months`` months
(current month last). Month-over-month compares the last two buckets.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import stripe
from sqlalchemy.orm import Session

from app.config import REVENUE_SETTINGS, STRIPE_SETTINGS
from app.models.db.payments import Payment
from app.services.ledger_client import LedgerClientRegistry, LedgerConfigurationError
from app.services.schema_fallback import SchemaFallbackExhausted, select_with_fallback
from app.utils import get_logger
from app.utils.metrics import clamp, mom_percent
from app.utils.time import coerce_datetime, ensure_utc, month_key, month_start, shift_months, utc_now

logger = get_logger(__name__)

_PAYMENTS = Payment.__table__

_PAYMENT_COLUMN_SETS = [
    ["id", "amount_cents", "created_at", "currency", "status", "stripe_subscription_id", "stripe_invoice_id"],
    ["id", "amount_cents", "created_at", "currency", "status", "stripe_subscription_id"],
]


@dataclass
class RevenueRecord:
    id: str
    amount_cents: int
    created_at: datetime
    currency: str
    stripe_subscription_id: Optional[str]
    stripe_invoice_id: Optional[str]
    source: str


def parse_months(value: Any) -> int:
    default = int(REVENUE_SETTINGS["default_months"])  # type: ignore[call-overload]
    if value is None or value == "":
        return default
    try:
        months = round(float(value))
    except (TypeError, ValueError):
        return default
    return clamp(months, int(REVENUE_SETTINGS["min_months"]), int(REVENUE_SETTINGS["max_months"]))  # type: ignore[call-overload]


def parse_revenue_mode(value: Any) -> str:
    mode = str(value or "").strip().lower()
    return mode if mode in ("live", "test", "all") else "all"


def normalize_currency(value: Any) -> str:
    currency = str(value or "usd").strip().lower() or "usd"
    aliases: dict[str, str] = REVENUE_SETTINGS["currency_aliases"]  # type: ignore[assignment]
    return aliases.get(currency, currency)


def parse_currency_filter(value: Any) -> str:
    currency = normalize_currency(value) if value else "all"
    return currency if currency in REVENUE_SETTINGS["currencies"] else "all"  # type: ignore[operator]


def is_paid_like(status: Any) -> bool:
    return str(status or "").lower() in REVENUE_SETTINGS["paid_statuses"]  # type: ignore[operator]


def month_keys(months: int, now: Optional[datetime] = None) -> list[str]:
    start = shift_months(month_start(now or utc_now()), -(months - 1))
    return [month_key(shift_months(start, index)) for index in range(months)]


def load_local_records(session: Session, since: datetime) -> list[RevenueRecord]:
    try:
        outcome = select_with_fallback(
            session,
            _PAYMENTS,
            _PAYMENT_COLUMN_SETS,
            [_PAYMENTS.c.created_at >= since],
            order_by=[_PAYMENTS.c.created_at],
        )
    except SchemaFallbackExhausted:
        return []

    records: list[RevenueRecord] = []
    for row in outcome.rows:
        created_at = coerce_datetime(row.get("created_at"))
        amount = int(row.get("amount_cents") or 0)
        if created_at is None or not row.get("stripe_subscription_id") or amount <= 0 or not is_paid_like(row.get("status")):
            continue
        records.append(RevenueRecord(
            id=f"payments:{row.get('stripe_invoice_id') or row['id']}",
            amount_cents=amount,
            created_at=created_at,
            currency=normalize_currency(row.get("currency")),
            stripe_subscription_id=row.get("stripe_subscription_id"),
            stripe_invoice_id=row.get("stripe_invoice_id"),
            source="payments",
        ))
    return records


def load_ledger_records(registry: LedgerClientRegistry, mode: str, since_unix: int) -> tuple[list[RevenueRecord], list[str]]:
    modes = ["live", "test"] if mode == "all" else [mode]
    max_pages = int(STRIPE_SETTINGS["max_invoice_pages"])  # type: ignore[call-overload]
    page_size = int(STRIPE_SETTINGS["page_size"])  # type: ignore[call-overload]
    records: list[RevenueRecord] = []
    warnings: list[str] = []

    for ledger_mode in modes:
        try:
            client = registry.get(ledger_mode)
            cursor: Optional[str] = None
            for _ in range(max_pages):
                page = client.list_paid_invoices(created_gte=since_unix, starting_after=cursor, limit=page_size)
                if not page.items:
                    break
                for invoice in page.items:
                    amount = int(invoice.get("amount_paid") or invoice.get("amount_due") or 0)
                    created_at = coerce_datetime(invoice.get("created"))
                    if not invoice.get("subscription_id") or created_at is None or amount <= 0:
                        continue
                    if str(invoice.get("status") or "").lower() != "paid":
                        continue
                    records.append(RevenueRecord(
                        id=f"stripe:{ledger_mode}:{invoice.get('id')}",
                        amount_cents=amount,
                        created_at=created_at,
                        currency=normalize_currency(invoice.get("currency")),
                        stripe_subscription_id=invoice.get("subscription_id"),
                        stripe_invoice_id=invoice.get("id"),
                        source=f"stripe_{ledger_mode}",
                    ))
                cursor = page.items[-1].get("id")
                if not page.has_more or not cursor:
                    break
        except (LedgerConfigurationError, stripe.StripeError) as e:
            logger.warning("Ledger invoices could not be loaded", mode=ledger_mode, error=str(e))
            warnings.append(f"{ledger_mode}: {e}")
    return records, warnings


def merge_records(local: list[RevenueRecord], ledger: list[RevenueRecord]) -> list[RevenueRecord]:
    """Local rows win: a ledger invoice already mirrored locally is dropped."""
    local_invoice_ids = {r.stripe_invoice_id for r in local if r.stripe_invoice_id}
    return local + [r for r in ledger if not (r.stripe_invoice_id and r.stripe_invoice_id in local_invoice_ids)]


def aggregate_series(records: list[RevenueRecord], keys: list[str]) -> dict[str, Any]:
    buckets = {key: {"month_key": key, "revenue_cents": 0, "transaction_count": 0} for key in keys}
    total_cents = 0
    total_transactions = 0
    for record in records:
        bucket = buckets.get(month_key(ensure_utc(record.created_at)))
        if bucket is None:
            continue
        bucket["revenue_cents"] += record.amount_cents
        bucket["transaction_count"] += 1
        total_cents += record.amount_cents
        total_transactions += 1

    series = [
        {**bucket, "revenue_amount": bucket["revenue_cents"] / 100}
        for bucket in (buckets[key] for key in keys)
    ]
    current = series[-1]["revenue_cents"] if series else 0
    previous = series[-2]["revenue_cents"] if len(series) > 1 else 0
    return {
        "series": series,
        "totals": {
            "total_volume_cents": total_cents,
            "total_volume_amount": total_cents / 100,
            "total_transactions": total_transactions,
            "current_month_cents": current,
            "current_month_amount": current / 100,
            "mom_percent": mom_percent(previous, current),
        },
    }


def _source_label(has_local: bool, has_ledger: bool) -> str:
    if has_local and has_ledger:
        return "database+stripe"
    if has_local:
        return "database"
    if has_ledger:
        return "stripe"
    return "empty"


def build_revenue_trend(
    session: Session,
    registry: LedgerClientRegistry,
    months: Any = None,
    mode: Any = "all",
    currency: Any = "all",
    *,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    months = parse_months(months)
    mode = parse_revenue_mode(mode)
    currency_filter = parse_currency_filter(currency)
    now = ensure_utc(now or utc_now())
    keys = month_keys(months, now)
    since = shift_months(month_start(now), -(months - 1))

    local = load_local_records(session, since)
    ledger, warnings = load_ledger_records(registry, mode, int(since.timestamp()))
    merged = merge_records(local, ledger)
    filtered = merged if currency_filter == "all" else [r for r in merged if r.currency == currency_filter]

    aggregate = aggregate_series(filtered, keys)
    series_by_currency: dict[str, Any] = {}
    totals_by_currency: dict[str, Any] = {}
    for code in sorted({r.currency for r in merged}):
        per_currency = aggregate_series([r for r in merged if r.currency == code], keys)
        series_by_currency[code] = per_currency["series"]
        totals_by_currency[code] = per_currency["totals"]

    return {
        "months": months,
        "mode": mode,
        "currency_filter": currency_filter,
        "currency": "mixed" if currency_filter == "all" else currency_filter,
        "source": _source_label(bool(local), bool(ledger)),
        "warnings": warnings,
        "series": aggregate["series"],
        "totals": aggregate["totals"],
        "series_by_currency": series_by_currency,
        "totals_by_currency": totals_by_currency,
    }


__all__ = [
    "RevenueRecord",
    "build_revenue_trend",
    "aggregate_series",
    "merge_records",
    "month_keys",
    "parse_months",
    "parse_currency_filter",
    "parse_revenue_mode",
    "normalize_currency",
]
