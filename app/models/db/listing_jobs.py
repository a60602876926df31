from __future__ import annotations
"""SQLAlchemy model for listing automation jobs pulled by extension workers.

``lock_version`` is bumped on every claim/report transition; the job store
uses it (together with ``status``) as the compare-and-swap guard.
"""
from sqlalchemy import Integer, String, Text, DateTime, ForeignKey, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from app.database import Base, new_id

class ListingJob(Base):
    __tablename__ = "listing_jobs"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    store_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("stores.id", ondelete="SET NULL"), nullable=True, index=True)
    job_type: Mapped[str] = mapped_column(String, default="LISTING_CREATE")
    status: Mapped[str] = mapped_column(String, default="queued")

    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    payload_version: Mapped[int] = mapped_column(Integer, default=1)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_by_worker_id: Mapped[str | None] = mapped_column(String, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    lock_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Remote references, set once the marketplace confirms creation
    etsy_listing_id: Mapped[str | None] = mapped_column(String, nullable=True)
    listing_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_refs: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_listing_jobs_user_status_created", "user_id", "status", "created_at"),
    )
