"""Tier model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Numeric, Text
from datetime import datetime, timezone
from billing.models.base import Base


class Tier(Base):
    """Plan definition: limits, prices and capability flags"""
    __tablename__ = "tiers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), unique=True, nullable=False, index=True)  # 'free', 'student', 'pro'
    display_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    display_order = Column(Integer, default=0, nullable=False)  # Higher = bigger plan, drives upgrade/downgrade
    is_active = Column(Boolean, default=True, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)  # Downgrade target on expiry

    # Allowances per period (NULL = unlimited)
    resource_cost_limit_per_period = Column(Numeric(18, 10), nullable=True)  # Reference currency (USD)
    resource_count_limit_per_period = Column(Integer, nullable=True)  # Distinct resources (documents)

    # Capabilities
    max_selectable_categories = Column(Integer, default=0, nullable=False)
    can_select_scope = Column(Boolean, default=False, nullable=False)
    has_premium_feature_access = Column(Boolean, default=False, nullable=False)

    # Pricing
    billing_price_monthly = Column(Numeric(10, 2), default=0, nullable=False)
    billing_price_yearly = Column(Numeric(10, 2), default=0, nullable=False)

    # Rewards
    referral_reward_amount = Column(Integer, default=0, nullable=False)  # Points credited to the referrer
    redeemable_point_cost = Column(Integer, default=0, nullable=False)  # 0 = cannot be bought with points

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self):
        return f"<Tier(name={self.name}, cost_limit={self.resource_cost_limit_per_period}, count_limit={self.resource_count_limit_per_period})>"
