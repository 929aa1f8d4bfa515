"""Account model"""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from billing.models.base import Base


class Account(Base):
    """Billable account (owned by the identity service, mirrored here by external_ref)"""
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    external_ref = Column(String(255), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=True)
    points_balance = Column(Integer, default=0, nullable=False)  # Referral points available to spend
    points_total_earned = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    subscriptions = relationship("Subscription", back_populates="account", cascade="all, delete-orphan")
    usage_events = relationship("UsageEvent", back_populates="account", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Account(id={self.id}, external_ref={self.external_ref}, points={self.points_balance})>"
