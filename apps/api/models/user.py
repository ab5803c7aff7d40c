"""User model."""

from sqlalchemy import Column, String, DateTime, Integer
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Account owning servers and a coin balance."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    # Mutated only through services.rewards_ledger.post_entry
    coins = Column(Integer, nullable=False, default=0)
    total_coins_earned = Column(Integer, nullable=False, default=0)
    total_coins_spent = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    servers = relationship("ManagedServer", back_populates="user")
    ledger_entries = relationship("RewardLedgerEntry", back_populates="user")
