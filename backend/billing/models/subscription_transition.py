"""SubscriptionTransition model"""
from sqlalchemy import Column, Integer, String, ForeignKey, JSON, Index, DateTime
from datetime import datetime, timezone
from billing.models.base import Base


class SubscriptionTransition(Base):
    """Transition history, doubling as the outbox for SubscriptionTransitioned events"""
    __tablename__ = "subscription_transitions"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True)
    old_tier = Column(String(50), nullable=True)
    new_tier = Column(String(50), nullable=True)
    reason = Column(String(50), nullable=False)  # 'created', 'upgrade', 'renewal', 'expired', ...
    payload = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    dispatched_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_subscription_transitions_pending', 'dispatched_at', 'id'),
    )

    def to_event(self) -> dict:
        """Outbound SubscriptionTransitioned payload"""
        return {
            "account_id": self.account_id,
            "subscription_id": self.subscription_id,
            "old_tier": self.old_tier,
            "new_tier": self.new_tier,
            "reason": self.reason,
            "details": self.payload or {},
        }
