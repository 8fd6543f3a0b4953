"""Subscription plan and per-user subscription models."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, Numeric, String
from sqlalchemy.orm import relationship

from database import Base
from models.timestamps import utcnow


class SubscriptionPlan(Base):
    """Catalog entry describing a tariff."""

    __tablename__ = "subscription_plans"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    plan_key = Column(String, unique=True, nullable=False, index=True)
    plan_name = Column(String, nullable=False)
    monthly_credits = Column(Integer, nullable=False, default=0)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String, nullable=False, default="RUB")
    allow_overage = Column(Boolean, nullable=False, default=False)
    overage_cost_per_credit = Column(Numeric(10, 2), nullable=True)
    features = Column(JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    subscriptions = relationship("Subscription", back_populates="plan")


class Subscription(Base):
    """Credit-bearing subscription owned by exactly one user.

    Every balance mutation bumps ``version``; concurrent writers that read the
    same version lose with ``StaleDataError`` instead of overwriting each other.
    """

    __tablename__ = "user_subscriptions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), unique=True, nullable=False, index=True)
    plan_id = Column(String, ForeignKey("subscription_plans.id"), nullable=False)
    status = Column(String, nullable=False, default="active")  # active, expired, cancelled
    credits_balance = Column(Integer, nullable=False, default=0)
    extra_credits = Column(Integer, nullable=False, default=0)
    credits_used = Column(Integer, nullable=False, default=0)
    overage_credits_used = Column(Integer, nullable=False, default=0)
    allow_overage = Column(Boolean, nullable=False, default=False)
    overage_cost_per_credit = Column(Numeric(10, 2), nullable=True)
    start_date = Column(DateTime(timezone=True), default=utcnow)
    end_date = Column(DateTime(timezone=True), nullable=True)
    auto_renew = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="subscription")
    plan = relationship("SubscriptionPlan", back_populates="subscriptions", lazy="joined", innerjoin=True)
    transactions = relationship("CreditTransaction", back_populates="subscription")

    __mapper_args__ = {"version_id_col": version}

    @property
    def total_available(self) -> int:
        return int(self.credits_balance or 0) + int(self.extra_credits or 0)
