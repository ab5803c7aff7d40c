"""Provisioned game server with billing lifecycle fields."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class ServerStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    PENDING_DELETION = "pending_deletion"
    DELETED = "deleted"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ManagedServer(Base):
    """Game server record. Lifecycle fields are written only by the reconciler."""

    __tablename__ = "servers"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False, default="server")
    billing_cycle = Column(String, nullable=False, default="1month")
    price_per_cycle = Column(Integer, nullable=False, default=0)
    panel_server_id = Column(Integer, nullable=True)

    status = Column(
        Enum(ServerStatus, native_enum=False, length=32, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=ServerStatus.ACTIVE,
        index=True,
    )
    expiry_at = Column(DateTime(timezone=True), nullable=True, index=True)
    suspended_at = Column(DateTime(timezone=True), nullable=True, index=True)
    suspension_reason = Column(String, nullable=True)
    overdue_amount = Column(Integer, nullable=False, default=0)
    last_billed_at = Column(DateTime(timezone=True), nullable=True)
    total_billed = Column(Integer, nullable=False, default=0)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="servers")
