"""User model."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
import uuid

from database import Base
from models.timestamps import utcnow


class User(Base):
    """Application user, either from the web panel or the Telegram Mini App."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    username = Column(String, nullable=True, index=True)
    source = Column(String, nullable=False, default="web")  # web, telegram
    telegram_id = Column(String, unique=True, nullable=True, index=True)
    telegram_chat_id = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    last_access_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    subscription = relationship("Subscription", back_populates="user", uselist=False)
    credit_transactions = relationship("CreditTransaction", back_populates="user")
    generation_requests = relationship("GenerationRequest", back_populates="user")

    @property
    def chat_address(self):
        """Push-capable chat id, present only for Telegram users."""
        if self.source != "telegram":
            return None
        return self.telegram_chat_id or None
