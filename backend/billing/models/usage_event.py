"""UsageEvent model"""
from sqlalchemy import Column, Integer, String, ForeignKey, Numeric, Index, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from billing.models.base import Base


class UsageEvent(Base):
    """Append-only usage ledger. Rows are never updated after insert."""
    __tablename__ = "usage_events"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True)
    request_id = Column(String(255), unique=True, nullable=False, index=True)  # Caller's idempotency key
    category = Column(String(50), nullable=False, default="chat")  # 'chat', 'ingestion', ...
    provider = Column(String(100), nullable=True)
    model = Column(String(100), nullable=True)
    input_units = Column(Integer, default=0, nullable=False)
    output_units = Column(Integer, default=0, nullable=False)
    input_unit_price = Column(Numeric(18, 10), nullable=False)  # Per million units
    output_unit_price = Column(Numeric(18, 10), nullable=False)  # Per million units
    cost = Column(Numeric(18, 10), nullable=False)  # Reference currency
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    # Relationships
    account = relationship("Account", back_populates="usage_events")

    __table_args__ = (
        Index('ix_usage_events_account_created', 'account_id', 'created_at'),
    )
