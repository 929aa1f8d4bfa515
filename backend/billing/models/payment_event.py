"""PaymentEvent model"""
from sqlalchemy import Column, Integer, String, Boolean, Text, JSON, DateTime
from datetime import datetime, timezone
from billing.models.base import Base


class PaymentEvent(Base):
    """Inbound payment notification log for exactly-once processing"""
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)  # Provider's transaction/notification id
    event_type = Column(String(50), nullable=False, index=True)  # 'payment_completed', 'payment_failed'
    account_id = Column(Integer, nullable=True, index=True)
    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    payload = Column(JSON, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
