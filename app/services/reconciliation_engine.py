"""Reconciliation engine: align local orders/payments with the payment ledger.

Single public function ``reconcile_payments(session, registry, ...)`` that:
1. Clamps the window (1..3650 days, default 180) and the session cap
   (20..2000, default 500).
2. Resolves the ledger modes (live / test / all = active first).
3. Per mode, pages through checkout sessions created inside the window
   (100 per page, ``starting_after`` cursor) until the ledger reports no
   more pages or the page cap (``max_pages``, 1..100, default 100) is hit.
4. Keeps one-time (``mode == "payment"``) sessions that name an order.
5. Classifies each as paid (``paid`` / ``no_payment_required``) or not.
6. Upserts paid ones through ``payment_sync.sync_checkout_payment``, the same
   path live webhooks use, at most ``max_sessions`` per mode.
7. Returns counts, per-session failures, per-mode warnings and per-mode summaries.

Failure policy:
* A ledger error in one mode becomes a warning ``"{mode}: {message}"``; the
  other mode is still scanned.
* Every mode failing raises ``ReconciliationUnavailable``.
* ``dry_run`` runs steps 1-5 and counts paid candidates without any write.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterator, Optional

import stripe
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import RECONCILIATION_SETTINGS, STRIPE_SETTINGS
from app.services.ledger_client import LedgerClientRegistry, LedgerConfigurationError, resolve_modes
from app.services.payment_sync import extract_order_id, sync_checkout_payment
from app.services.schema_fallback import SchemaFallbackExhausted
from app.utils import get_logger, log_business_event
from app.utils.metrics import clamp
from app.utils.time import ensure_utc, utc_now

logger = get_logger(__name__)

PAID_CHECKOUT_STATUSES = ("paid", "no_payment_required")


class ReconciliationUnavailable(RuntimeError):
    """No ledger mode could be read."""

    def __init__(self, warnings: list[str]):
        super().__init__("Checkout sessions could not be read from the ledger")
        self.warnings = warnings


@dataclass
class ModeSummary:
    mode: str
    scanned: int = 0
    eligible: int = 0
    paid_candidates: int = 0
    synced: int = 0
    orders_marked_paid: int = 0
    skipped_not_paid: int = 0
    skipped: int = 0
    failures: list[dict[str, str]] = field(default_factory=list)
    warning: Optional[str] = None


@dataclass
class ReconciliationResult:
    requested_mode: str
    processed_modes: list[str]
    window_days: int
    max_sessions: int
    dry_run: bool
    max_pages: int
    scanned: int = 0
    eligible: int = 0
    paid_candidates: int = 0
    synced: int = 0
    orders_marked_paid: int = 0
    skipped_not_paid: int = 0
    skipped: int = 0
    failures: list[dict[str, str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    mode_summaries: list[ModeSummary] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _to_int(value: Any, default: int) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def clamp_window_days(value: Any) -> int:
    cfg = RECONCILIATION_SETTINGS
    return clamp(_to_int(value, cfg["default_days"]), cfg["min_days"], cfg["max_days"])


def clamp_max_sessions(value: Any) -> int:
    cfg = RECONCILIATION_SETTINGS
    return clamp(_to_int(value, cfg["default_max_sessions"]), cfg["min_sessions"], cfg["max_sessions"])


def clamp_max_pages(value: Any) -> int:
    cfg = RECONCILIATION_SETTINGS
    return clamp(_to_int(value, cfg["default_max_pages"]), cfg["min_pages"], cfg["max_pages"])


def is_paid_checkout(checkout: dict[str, Any]) -> bool:
    return (checkout.get("payment_status") or "").lower() in PAID_CHECKOUT_STATUSES


def iter_checkout_sessions(client, since_unix: int, max_pages: Optional[int] = None) -> Iterator[dict[str, Any]]:
    page_size = int(STRIPE_SETTINGS["page_size"])  # type: ignore[call-overload]
    if max_pages is None:
        max_pages = int(STRIPE_SETTINGS["max_invoice_pages"])  # type: ignore[call-overload]
    cursor: Optional[str] = None
    for _ in range(max_pages):
        page = client.list_checkout_sessions(created_gte=since_unix, starting_after=cursor, limit=page_size)
        if not page.items:
            return
        yield from page.items
        if not page.has_more:
            return
        cursor = page.items[-1].get("id")
        if not cursor:
            return


def _reconcile_mode(
    session: Session,
    client,
    mode: str,
    since_unix: int,
    max_sessions: int,
    dry_run: bool,
    max_pages: Optional[int] = None,
) -> ModeSummary:
    summary = ModeSummary(mode=mode)
    try:
        for checkout in iter_checkout_sessions(client, since_unix, max_pages):
            _classify(session, summary, checkout, max_sessions, dry_run)
    except stripe.StripeError as e:
        # Keep what was already scanned; only a mode that yielded nothing counts as failed.
        if summary.scanned == 0:
            raise
        summary.warning = f"{mode}: {e}"
    return summary


def _classify(session: Session, summary: ModeSummary, checkout: dict[str, Any], max_sessions: int, dry_run: bool) -> None:
    summary.scanned += 1
    if checkout.get("mode") != "payment" or not extract_order_id(checkout):
        return
    summary.eligible += 1
    if not is_paid_checkout(checkout):
        summary.skipped_not_paid += 1
        return
    summary.paid_candidates += 1
    if dry_run:
        return
    # max_sessions bounds the writes of one run; the rest waits for the next run
    if summary.synced + len(summary.failures) >= max_sessions:
        summary.skipped += 1
        return
    try:
        result = sync_checkout_payment(session, checkout, forced_status="paid")
    except (SQLAlchemyError, SchemaFallbackExhausted, ValueError) as e:
        session.rollback()
        logger.warning("Checkout session sync failed", mode=summary.mode, session_id=checkout.get("id"), error=str(e))
        summary.failures.append({"session_id": str(checkout.get("id")), "reason": str(e) or "sync_failed"})
        return
    summary.synced += 1
    if result.order_updated:
        summary.orders_marked_paid += 1


def reconcile_payments(
    session: Session,
    registry: LedgerClientRegistry,
    mode: str = "all",
    window_days: Any = None,
    max_sessions: Any = None,
    dry_run: bool = False,
    *,
    max_pages: Any = None,
    now: Optional[datetime] = None,
) -> ReconciliationResult:
    requested = (mode or "all").lower()
    days = clamp_window_days(window_days)
    cap = clamp_max_sessions(max_sessions)
    pages = clamp_max_pages(max_pages)
    now = ensure_utc(now or utc_now())
    since_unix = int((now - timedelta(days=days)).timestamp())

    result = ReconciliationResult(
        requested_mode=requested,
        processed_modes=[],
        window_days=days,
        max_sessions=cap,
        dry_run=bool(dry_run),
        max_pages=pages,
    )
    for ledger_mode in resolve_modes(requested):
        try:
            client = registry.get(ledger_mode)
            summary = _reconcile_mode(session, client, ledger_mode, since_unix, cap, bool(dry_run), pages)
        except (LedgerConfigurationError, stripe.StripeError) as e:
            logger.warning("Ledger scan failed", mode=ledger_mode, error=str(e))
            result.warnings.append(f"{ledger_mode}: {e}")
            continue
        result.mode_summaries.append(summary)
        result.processed_modes.append(ledger_mode)
        if summary.warning:
            result.warnings.append(summary.warning)

    if not result.mode_summaries:
        raise ReconciliationUnavailable(result.warnings)

    for summary in result.mode_summaries:
        result.scanned += summary.scanned
        result.eligible += summary.eligible
        result.paid_candidates += summary.paid_candidates
        result.synced += summary.synced
        result.orders_marked_paid += summary.orders_marked_paid
        result.skipped_not_paid += summary.skipped_not_paid
        result.skipped += summary.skipped
        result.failures.extend({**failure, "mode": summary.mode} for failure in summary.failures)

    log_business_event(
        "payments_reconciled",
        {
            "mode": requested,
            "dry_run": result.dry_run,
            "scanned": result.scanned,
            "paid_candidates": result.paid_candidates,
            "synced": result.synced,
            "orders_marked_paid": result.orders_marked_paid,
            "warnings": len(result.warnings),
        },
    )
    return result


__all__ = [
    "ModeSummary",
    "ReconciliationResult",
    "ReconciliationUnavailable",
    "reconcile_payments",
    "clamp_window_days",
    "clamp_max_sessions",
    "clamp_max_pages",
    "is_paid_checkout",
    "iter_checkout_sessions",
]
