"""Subscription entitlement checks shared by the job store and the scheduler."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.config import SCHEDULER_SETTINGS
from app.models.db.subscriptions import Subscription
from app.utils.time import ensure_utc, utc_now


def is_subscription_active(subscription: Subscription, now: datetime | None = None) -> bool:
    """active/trialing, and the current period (when known) has not ended."""
    statuses: Iterable[str] = SCHEDULER_SETTINGS["active_subscription_statuses"]  # type: ignore[assignment]
    if (subscription.status or "").lower() not in statuses:
        return False
    period_end = subscription.current_period_end
    if period_end is None:
        return True
    return ensure_utc(period_end) > ensure_utc(now or utc_now())  # type: ignore[arg-type]


def user_has_active_subscription(session: Session, user_id: str, now: datetime | None = None) -> bool:
    rows = session.execute(select(Subscription).where(Subscription.user_id == user_id)).scalars().all()
    return any(is_subscription_active(row, now) for row in rows)


def active_subscriptions(session: Session, now: datetime | None = None) -> list[Subscription]:
    statuses = list(SCHEDULER_SETTINGS["active_subscription_statuses"])  # type: ignore[call-overload]
    rows = session.execute(
        select(Subscription).where(Subscription.status.in_(statuses)).order_by(Subscription.created_at, Subscription.id)
    ).scalars().all()
    return [row for row in rows if is_subscription_active(row, now)]


def active_subscription_for_store(session: Session, store_id: str, now: datetime | None = None) -> Subscription | None:
    rows = session.execute(
        select(Subscription)
        .where(or_(Subscription.store_id == store_id, Subscription.shop_id == store_id))
        .order_by(Subscription.created_at.desc())
    ).scalars().all()
    for row in rows:
        if is_subscription_active(row, now):
            return row
    return None


def resolve_store_id(subscription: Subscription) -> str | None:
    return subscription.store_id or subscription.shop_id or None


__all__ = [
    "is_subscription_active",
    "user_has_active_subscription",
    "active_subscriptions",
    "active_subscription_for_store",
    "resolve_store_id",
]
