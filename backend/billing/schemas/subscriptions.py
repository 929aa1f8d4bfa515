"""Pydantic schemas for subscriptions and payment events"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class BillingCycle(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"

    @classmethod
    def from_string(cls, value: str) -> Optional['BillingCycle']:
        """Convert string to enum, returning None for unknown values"""
        if not value:
            return None
        try:
            return cls(value.lower())
        except ValueError:
            return None


class PaymentCompletedEvent(BaseModel):
    """Inbound PaymentCompleted notification"""
    account_id: int
    tier: str = Field(..., min_length=1)
    billing_cycle: str
    payment_method_class: str = "card"
    external_txn_id: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentFailedEvent(BaseModel):
    """Inbound PaymentFailed notification"""
    account_id: int
    reason: str = "payment_failed"
    external_txn_id: str = Field(..., min_length=1)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class ScopeSelectionRequest(BaseModel):
    scope_ids: List[str]


class RedeemPointsRequest(BaseModel):
    tier: str = Field(..., min_length=1)
