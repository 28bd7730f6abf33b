"""Transaction model: applied top-ups keyed by external transaction id."""

import uuid

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class Transaction(Base):
    """Immutable record of a credit top-up; transaction_id is the idempotency key."""

    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    transaction_id = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    credits_added = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
