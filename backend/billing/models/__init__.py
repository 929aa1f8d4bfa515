"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from billing.models.base import Base
from billing.models.account import Account
from billing.models.tier import Tier
from billing.models.subscription import Subscription
from billing.models.usage_event import UsageEvent
from billing.models.payment_event import PaymentEvent
from billing.models.subscription_transition import SubscriptionTransition
from billing.models.provider_rate import ProviderRate
from billing.models.referral import Referral, PointsTransaction

# Export all for convenience
__all__ = [
    "Base", "Account", "Tier", "Subscription", "UsageEvent", "PaymentEvent",
    "SubscriptionTransition", "ProviderRate", "Referral", "PointsTransaction"
]
