"""Idempotent upsert of one-time checkout payments.

Shared by live webhook ingestion and reconciliation so both paths use one
dedup key: ``payments.stripe_session_id``. Re-observing a session updates
its row; a payment or order that reached ``paid`` is never moved back.
"""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from app.database import new_id
from app.models.db.enums import PaymentStatus
from app.models.db.orders import Order
from app.models.db.payments import Payment
from app.services.schema_fallback import (
    SchemaFallbackExhausted,
    insert_with_fallback,
    select_with_fallback,
    update_with_fallback,
)
from app.utils import get_logger
from app.utils.time import utc_now

logger = get_logger(__name__)

_PAYMENTS = Payment.__table__
_ORDERS = Order.__table__

ORDER_SHOP_PREFIX = "order_"


@dataclass
class PaymentSyncResult:
    payment_id: Optional[str]
    payment_status: str
    order_id: Optional[str]
    order_updated: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def is_uuid(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def normalize_checkout_status(status: Optional[str], forced: Optional[str] = None) -> str:
    if forced:
        return forced
    value = (status or "").lower()
    if value in ("paid", "no_payment_required"):
        return PaymentStatus.PAID.value
    if value == "failed":
        return PaymentStatus.FAILED.value
    return PaymentStatus.PENDING.value


def extract_order_id(checkout: Mapping[str, Any]) -> Optional[str]:
    """``metadata.orderId`` when it is a UUID, else ``metadata.shopId = order_<uuid>``."""
    metadata = checkout.get("metadata") or {}
    order_id = metadata.get("orderId")
    if is_uuid(order_id):
        return order_id
    shop_id = metadata.get("shopId")
    if isinstance(shop_id, str) and shop_id.startswith(ORDER_SHOP_PREFIX):
        candidate = shop_id[len(ORDER_SHOP_PREFIX):]
        if is_uuid(candidate):
            return candidate
    return None


def _find_payment(session: Session, session_id: str, shop_id: Optional[str]) -> Optional[dict[str, Any]]:
    try:
        outcome = select_with_fallback(
            session,
            _PAYMENTS,
            [["id", "status"]],
            [_PAYMENTS.c.stripe_session_id == session_id],
            limit=1,
        )
        return outcome.rows[0] if outcome.rows else None
    except SchemaFallbackExhausted:
        logger.debug("payments.stripe_session_id missing; matching by shop_id", session_id=session_id)

    if not shop_id:
        return None
    try:
        outcome = select_with_fallback(
            session,
            _PAYMENTS,
            [["id", "status"]],
            [_PAYMENTS.c.shop_id == shop_id],
            order_by=[_PAYMENTS.c.created_at.desc()],
            limit=1,
        )
    except SchemaFallbackExhausted:
        return None
    return outcome.rows[0] if outcome.rows else None


def _payment_candidates(values: Mapping[str, Any]) -> list[dict[str, Any]]:
    full = dict(values)
    without_shop = {k: v for k, v in full.items() if k != "shop_id"}
    without_session = {k: v for k, v in full.items() if k != "stripe_session_id"}
    minimal = {k: v for k, v in full.items() if k in ("id", "amount_cents", "currency", "status", "updated_at")}
    return [full, without_shop, without_session, minimal]


def _update_order(session: Session, order_id: str, user_id: Optional[str], status: str) -> bool:
    where = [_ORDERS.c.id == order_id]
    if is_uuid(user_id):
        where.append(_ORDERS.c.user_id == user_id)
    if status != PaymentStatus.PAID.value:
        where.append(_ORDERS.c.payment_status != PaymentStatus.PAID.value)
    outcome = update_with_fallback(
        session,
        _ORDERS,
        where,
        [{"payment_status": status, "updated_at": utc_now()}, {"payment_status": status}],
    )
    return outcome.rowcount > 0


def sync_checkout_payment(
    session: Session,
    checkout: Mapping[str, Any],
    forced_status: Optional[str] = None,
    *,
    dry_run: bool = False,
) -> PaymentSyncResult:
    session_id = checkout.get("id")
    if not session_id:
        raise ValueError("checkout session id is required")
    metadata = checkout.get("metadata") or {}
    status = normalize_checkout_status(checkout.get("payment_status"), forced_status)
    user_id = metadata.get("userId")
    shop_id = metadata.get("shopId")
    order_id = extract_order_id(checkout)
    if dry_run:
        return PaymentSyncResult(payment_id=None, payment_status=status, order_id=order_id, order_updated=False)

    existing = _find_payment(session, session_id, shop_id)
    if existing and existing.get("status") == PaymentStatus.PAID.value and status != PaymentStatus.PAID.value:
        status = PaymentStatus.PAID.value

    values: dict[str, Any] = {
        "user_id": user_id,
        "shop_id": shop_id,
        "stripe_session_id": session_id,
        "amount_cents": int(checkout.get("amount_total") or 0),
        "currency": str(checkout.get("currency") or "usd").lower(),
        "status": status,
        "updated_at": utc_now(),
    }
    if existing:
        payment_id = existing["id"]
        update_with_fallback(session, _PAYMENTS, [_PAYMENTS.c.id == payment_id], _payment_candidates(values))
    else:
        payment_id = new_id()
        insert_with_fallback(session, _PAYMENTS, _payment_candidates({"id": payment_id, **values}))

    order_updated = _update_order(session, order_id, user_id, status) if order_id else False
    logger.info(
        "Checkout payment synced",
        session_id=session_id,
        payment_id=payment_id,
        status=status,
        order_id=order_id,
        order_updated=order_updated,
    )
    return PaymentSyncResult(payment_id=payment_id, payment_status=status, order_id=order_id, order_updated=order_updated)


__all__ = [
    "PaymentSyncResult",
    "sync_checkout_payment",
    "extract_order_id",
    "normalize_checkout_status",
    "is_uuid",
]
