"""Subscription model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, JSON, Numeric, Text, Index, text
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from billing.models.base import Base

# Statuses that count as the account's current subscription
CURRENT_STATUSES = ("active", "suspended")


class Subscription(Base):
    """Per-account subscription state and current-period usage counters"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    tier_id = Column(Integer, ForeignKey("tiers.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="active")  # 'active', 'cancelled', 'expired', 'suspended'
    billing_cycle = Column(String(20), nullable=False, default="monthly")  # 'daily', 'monthly', 'yearly', 'lifetime'
    is_recurring = Column(Boolean, default=False, nullable=False)
    payment_method_class = Column(String(50), nullable=True)  # 'card', 'wallet', 'bank_transfer', ...

    # Billing period (period_end drives resets; NULL for lifetime)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=True, index=True)
    subscription_end = Column(DateTime(timezone=True), nullable=True)  # End of the prepaid term: yearly, or manual renewals paid ahead
    period_anchor = Column(DateTime(timezone=True), nullable=True)  # Period boundaries are anchor + n cycles

    # Current-period usage
    resource_cost_used_current_period = Column(Numeric(18, 10), default=0, nullable=False)
    resource_count_used_current_period = Column(Integer, default=0, nullable=False)
    accessed_resource_ids = Column(JSON, default=list, nullable=False)
    resource_limit_override = Column(Numeric(18, 10), nullable=True)  # Carryover limit until next rollover

    # Allowance snapshot taken from the tier when the period started (NULL = unlimited)
    resource_cost_limit = Column(Numeric(18, 10), nullable=True)
    resource_count_limit = Column(Integer, nullable=True)

    # One-time scope selection (NULL = not chosen yet)
    selected_scope_ids = Column(JSON, nullable=True)

    # Cancellation / suspension
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    cancellation_reason = Column(Text, nullable=True)
    cancellation_requested_at = Column(DateTime(timezone=True), nullable=True)
    suspended_reason = Column(Text, nullable=True)

    last_payment_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    account = relationship("Account", back_populates="subscriptions")
    tier = relationship("Tier")

    __table_args__ = (
        # At most one current (active or suspended) subscription per account
        Index(
            'uq_subscriptions_account_current',
            'account_id',
            unique=True,
            postgresql_where=text("status IN ('active', 'suspended')"),
            sqlite_where=text("status IN ('active', 'suspended')"),
        ),
        Index('ix_subscriptions_status_period_end', 'status', 'period_end'),
    )

    def __repr__(self):
        return (
            f"<Subscription(account_id={self.account_id}, tier_id={self.tier_id}, status={self.status}, "
            f"cycle={self.billing_cycle}, used={self.resource_cost_used_current_period})>"
        )
