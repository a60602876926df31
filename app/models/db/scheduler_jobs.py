from __future__ import annotations
"""SQLAlchemy model for scheduler dispatch attempts (one row per idempotency key)."""
from sqlalchemy import Integer, String, Text, DateTime, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from app.database import Base, new_id

class SchedulerJob(Base):
    __tablename__ = "scheduler_jobs"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    subscription_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    plan: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, server_default="processing")
    # Unique key is the only deduplication mechanism for triggers
    idempotency_key: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    run_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")

    # Added by the store automation migration
    store_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    webhook_config_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    trigger_type: Mapped[str | None] = mapped_column(String, nullable=True, server_default="scheduled")
    request_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True, server_default=func.now())

    __table_args__ = (
        Index("idx_scheduler_jobs_store_trigger_run_at", "store_id", "trigger_type", "run_at"),
    )
