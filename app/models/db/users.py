from __future__ import annotations
"""SQLAlchemy model for users (store owners running the extension, and admins)."""
from typing import TYPE_CHECKING
from sqlalchemy import String, DateTime, Boolean, Enum
from sqlalchemy.orm import relationship, Mapped, mapped_column

if TYPE_CHECKING:  # pragma: no cover
    from .subscriptions import Subscription
    from .stores import Store
from sqlalchemy.sql import func
from app.database import Base, new_id
from .enums import UserRole

class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    # Bearer credential used by the browser extension and admin tooling
    api_key: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    role: Mapped[UserRole] = mapped_column(Enum(UserRole, native_enum=False), default=UserRole.USER, index=True)

    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    subscriptions: Mapped[list["Subscription"]] = relationship("Subscription", back_populates="user")
    stores: Mapped[list["Store"]] = relationship("Store", back_populates="user")
