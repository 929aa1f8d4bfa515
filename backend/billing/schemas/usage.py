"""Pydantic schemas for usage metering and access checks"""
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class AccessAction(str, Enum):
    """What the caller wants to do with a resource"""
    USAGE = "usage"  # metered work, checked against the cost allowance
    RESOURCE = "resource"  # open a distinct resource, checked against the count allowance


class ProviderUsageDetail(BaseModel):
    provider: Optional[str] = None
    model: Optional[str] = None
    input_units: int = Field(0, ge=0)
    output_units: int = Field(0, ge=0)
    # Prices per million units; fall back to the registered provider rate when omitted
    input_price_per_million: Optional[Decimal] = Field(None, ge=0)
    output_price_per_million: Optional[Decimal] = Field(None, ge=0)


class RecordUsageRequest(BaseModel):
    account_id: int
    request_id: str = Field(..., min_length=1, max_length=255)
    category: str = Field("chat", max_length=50)
    usage: ProviderUsageDetail


class ResourceRef(BaseModel):
    """Static attributes of the resource being accessed"""
    resource_id: Optional[str] = None
    category_id: Optional[str] = None  # Scope (subject/grade) the resource belongs to


class AccessCheckRequest(BaseModel):
    account_id: int
    action: AccessAction = AccessAction.USAGE
    resource: ResourceRef = Field(default_factory=ResourceRef)


class ResourceAccessRequest(BaseModel):
    account_id: int
    resource: ResourceRef


class AccessDecision(BaseModel):
    """Result of an access check. -1 means unlimited."""
    allowed: bool
    reason: str
    tier_name: Optional[str] = None
    cost_remaining: Optional[Decimal] = None
    tokens_remaining: Optional[int] = None
    count_remaining: Optional[int] = None
