from __future__ import annotations
"""SQLAlchemy model for locally mirrored payments (checkout sessions and subscription invoices)."""
from sqlalchemy import Integer, String, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from app.database import Base, new_id

class Payment(Base):
    __tablename__ = "payments"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    shop_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # External identity; re-observing a session must update, never duplicate
    stripe_session_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    stripe_invoice_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    currency: Mapped[str] = mapped_column(String(8), nullable=False, server_default="usd")
    status: Mapped[str] = mapped_column(String, nullable=False, server_default="pending")
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
