from __future__ import annotations
"""SQLAlchemy model for outbound webhook configurations.

Optional columns (description, scope, product_id, updated_at) only carry
server-side defaults: Core inserts must never emit a column the caller did
not ask for, otherwise the schema fallback could not drop it.
"""
from sqlalchemy import String, Text, DateTime, Boolean, JSON, Index, text, true
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from app.database import Base, new_id

class WebhookConfig(Base):
    __tablename__ = "webhook_configs"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    method: Mapped[str] = mapped_column(String(8), nullable=False, server_default="POST")
    headers: Mapped[dict] = mapped_column(JSON, nullable=False, server_default=text("'{}'"))
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=true())
    scope: Mapped[str | None] = mapped_column(String, nullable=True, server_default="generic")
    product_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True, server_default=func.now())

    __table_args__ = (
        # One enabled automation webhook per product
        Index(
            "uniq_webhook_configs_active_automation_product",
            "product_id",
            unique=True,
            sqlite_where=text("product_id IS NOT NULL AND enabled = 1 AND scope = 'automation'"),
            postgresql_where=text("product_id IS NOT NULL AND enabled = true AND scope = 'automation'"),
        ),
    )
