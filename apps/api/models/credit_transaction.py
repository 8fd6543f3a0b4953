"""Credit cost table and immutable credit transaction ledger."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base
from models.timestamps import utcnow


TRANSACTION_TYPES = ("grant", "debit", "refund", "overage")
CHARGE_TYPES = ("debit", "overage")


class CreditCost(Base):
    """Static price of one operation type."""

    __tablename__ = "credit_costs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    operation_type = Column(String, unique=True, nullable=False, index=True)
    operation_name = Column(String, nullable=False)
    credit_cost = Column(Integer, nullable=False)
    description = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class CreditTransaction(Base):
    """Immutable credit ledger entry.

    ``balance_before``/``balance_after`` hold the total spendable amount
    (main balance plus extra credits) around this entry.
    """

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("generation_request_id", "type", name="uq_credit_transactions_request_type"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    subscription_id = Column(String, ForeignKey("user_subscriptions.id"), nullable=False, index=True)
    type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    operation_type = Column(String, nullable=True)
    generation_request_id = Column(String, ForeignKey("generation_requests.id"), nullable=True, index=True)
    description = Column(String, nullable=True)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    user = relationship("User", back_populates="credit_transactions")
    subscription = relationship("Subscription", back_populates="transactions")
