from __future__ import annotations
"""SQLAlchemy model for the webhook dispatch audit trail.

Also stores store -> webhook bindings (request_method STORE_WEBHOOK_MAP) for
databases whose stores table predates active_webhook_config_id.
"""
from sqlalchemy import Integer, String, Text, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from app.database import Base, new_id

class WebhookLog(Base):
    __tablename__ = "webhook_logs"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    request_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_method: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    request_headers: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    request_body: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
