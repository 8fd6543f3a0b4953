"""Generation request model."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship
import uuid

from database import Base
from models.timestamps import utcnow


class GenerationRequest(Base):
    """One requested generation, tracked from credit reservation to delivery."""

    __tablename__ = "generation_requests"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    generation_type = Column(String, nullable=False, index=True)
    input_params = Column(JSON, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, completed, failed
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    credit_cost = Column(Integer, nullable=False, default=0)
    queue_job_id = Column(String, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    sent_to_telegram = Column(Boolean, nullable=False, default=False)
    telegram_sent_at = Column(DateTime(timezone=True), nullable=True)
    delivery_claimed_until = Column(DateTime(timezone=True), nullable=True)
    delivery_note = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="generation_requests")
