"""Pydantic schemas for accounts and referrals"""
from typing import Optional

from pydantic import BaseModel, Field


class CreateAccountRequest(BaseModel):
    external_ref: str = Field(..., min_length=1, max_length=255)
    email: Optional[str] = None
    referred_by_account_id: Optional[int] = None
