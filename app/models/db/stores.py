from __future__ import annotations
"""SQLAlchemy model for connected storefronts.

The automation binding columns (product_id, active_webhook_config_id,
automation_updated_*) were added after the table shipped; writers go through
the field-subset fallback so older databases keep working.
"""
from typing import TYPE_CHECKING
from sqlalchemy import Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship, Mapped, mapped_column

if TYPE_CHECKING:  # pragma: no cover
    from .users import User
from sqlalchemy.sql import func
from app.database import Base, new_id

class Store(Base):
    __tablename__ = "stores"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    store_name: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, server_default="pending")
    price_cents: Mapped[int] = mapped_column(Integer, server_default="2990")

    product_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    active_webhook_config_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("webhook_configs.id", ondelete="SET NULL"), nullable=True, index=True)
    automation_updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    automation_updated_by: Mapped[str | None] = mapped_column(String(36), nullable=True)

    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    user: Mapped["User"] = relationship("User", back_populates="stores")
