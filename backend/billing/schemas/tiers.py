"""Pydantic schemas for the tier catalog"""
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TierInfo(BaseModel):
    """Immutable snapshot of a tier row, safe to cache across sessions"""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    name: str
    display_name: str
    description: Optional[str] = None
    display_order: int = 0
    is_active: bool = True
    is_default: bool = False
    resource_cost_limit_per_period: Optional[Decimal] = None
    resource_count_limit_per_period: Optional[int] = None
    max_selectable_categories: int = 0
    can_select_scope: bool = False
    has_premium_feature_access: bool = False
    billing_price_monthly: Decimal = Decimal("0")
    billing_price_yearly: Decimal = Decimal("0")
    referral_reward_amount: int = 0
    redeemable_point_cost: int = 0

    @property
    def is_unlimited(self) -> bool:
        return self.resource_cost_limit_per_period is None and self.resource_count_limit_per_period is None


class TierUpsertRequest(BaseModel):
    """Admin create/update of a tier. -1 limits mean unlimited."""
    name: str = Field(..., min_length=1, max_length=50)
    display_name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    display_order: int = 0
    is_active: bool = True
    is_default: bool = False
    resource_cost_limit_per_period: Optional[Decimal] = None
    resource_count_limit_per_period: Optional[int] = None
    max_selectable_categories: int = Field(0, ge=0)
    can_select_scope: bool = False
    has_premium_feature_access: bool = False
    billing_price_monthly: Decimal = Field(Decimal("0"), ge=0)
    billing_price_yearly: Decimal = Field(Decimal("0"), ge=0)
    referral_reward_amount: int = Field(0, ge=0)
    redeemable_point_cost: int = Field(0, ge=0)

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v):
        return v.strip().lower()

    @field_validator("resource_cost_limit_per_period", "resource_count_limit_per_period")
    @classmethod
    def normalize_unlimited(cls, v):
        if v is not None and v < 0:
            return None
        return v


class ProviderRateRequest(BaseModel):
    provider: str = Field(..., min_length=1, max_length=100)
    model: str = Field(..., min_length=1, max_length=100)
    input_price_per_million: Decimal = Field(..., ge=0)
    output_price_per_million: Decimal = Field(..., ge=0)
    is_active: bool = True
