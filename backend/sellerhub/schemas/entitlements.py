"""Pydantic schemas for entitlements"""
from typing import Optional

from pydantic import BaseModel, Field


class SpendRequest(BaseModel):
    page: str = Field(..., min_length=1, max_length=100)
    action: str = Field(..., min_length=1, max_length=100)
    role_id: Optional[str] = None


class DecisionResponse(BaseModel):
    has_access: bool
    credit_cost: int
    can_afford: bool
    credits_remaining: int
    is_module_access: bool
    reason: str


class SpendResponse(BaseModel):
    page: str
    action: str
    credits_spent: int
    credits_remaining: int
    transaction_id: Optional[int] = None
    is_module_access: bool = False
