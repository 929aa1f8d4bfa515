"""Referral and PointsTransaction models"""
from sqlalchemy import Column, Integer, String, ForeignKey, JSON, DateTime, Index
from datetime import datetime, timezone
from billing.models.base import Base


class Referral(Base):
    """Links a referring account to the account it brought in"""
    __tablename__ = "referrals"

    id = Column(Integer, primary_key=True, index=True)
    referrer_account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    referred_account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, unique=True)
    status = Column(String(20), default="pending", nullable=False)  # 'pending', 'completed'
    times_awarded = Column(Integer, default=0, nullable=False)
    last_awarded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)


class PointsTransaction(Base):
    """Referral points audit log"""
    __tablename__ = "points_transactions"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_type = Column(String(50), nullable=False)  # 'referral_reward', 'redemption'
    amount = Column(Integer, nullable=False)  # Positive for credits, negative for spends
    balance_after = Column(Integer, nullable=False)
    transaction_metadata = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('ix_points_transactions_account_created', 'account_id', 'created_at'),
    )
