"""CreditBalance model: one spendable balance row per user."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class CreditBalance(Base):
    """Current credit balance for an externally authenticated user."""

    __tablename__ = "credits"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_credits_balance_non_negative"),)

    user_id = Column(String, primary_key=True)
    balance = Column(Integer, nullable=False, default=0, server_default="0")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
