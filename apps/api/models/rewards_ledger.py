"""Append-only rewards ledger."""

import enum
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from database import Base


class LedgerSourceCategory(str, enum.Enum):
    REFERRAL = "referral"
    DAILY_LOGIN = "daily_login"
    PROMOTION = "promotion"
    TRANSFER = "transfer"
    REDEEM_CODE = "redeem_code"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    BILLING = "billing"


class LedgerSourceAction(str, enum.Enum):
    EARN = "earn"
    SPEND = "spend"
    ADJUST = "adjust"


def _enum_column(enum_cls):
    return Enum(enum_cls, native_enum=False, length=32, values_callable=lambda e: [m.value for m in e])


class RewardLedgerEntry(Base):
    """Immutable balance-change record with before/after snapshot."""

    __tablename__ = "rewards_ledger"
    __table_args__ = (
        Index("ix_rewards_ledger_user_time", "user_id", "created_at"),
        Index("ix_rewards_ledger_source_time", "source_category", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    source_category = Column(_enum_column(LedgerSourceCategory), nullable=False)
    source_action = Column(_enum_column(LedgerSourceAction), nullable=False)
    reference_id = Column(String, nullable=True, index=True)
    message = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=True, unique=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )

    user = relationship("User", back_populates="ledger_entries")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "delta": self.delta,
            "balance_before": self.balance_before,
            "balance_after": self.balance_after,
            "source_category": self.source_category.value if self.source_category else None,
            "source_action": self.source_action.value if self.source_action else None,
            "reference_id": self.reference_id,
            "message": self.message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
