"""Pydantic schemas for plan administration"""
from typing import List, Optional

from pydantic import BaseModel, Field

SLUG_PATTERN = r"^[a-z0-9-]+$"


class PlanCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    slug: str = Field(min_length=1, max_length=50, pattern=SLUG_PATTERN)
    description: Optional[str] = Field(default=None, max_length=500)
    price_monthly: int = Field(ge=0)  # minor currency units
    price_yearly: int = Field(ge=0)
    features: List[str] = Field(default_factory=list)
    max_users: Optional[int] = Field(default=None, ge=1)
    max_team_members: Optional[int] = Field(default=None, ge=1)
    is_popular: bool = False
    is_active: bool = True
    sort_order: int = 0


class PlanUpdate(BaseModel):
    """Partial update - only fields present in the request are applied"""
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    slug: Optional[str] = Field(default=None, min_length=1, max_length=50, pattern=SLUG_PATTERN)
    description: Optional[str] = Field(default=None, max_length=500)
    price_monthly: Optional[int] = Field(default=None, ge=0)
    price_yearly: Optional[int] = Field(default=None, ge=0)
    features: Optional[List[str]] = None
    max_users: Optional[int] = Field(default=None, ge=1)
    max_team_members: Optional[int] = Field(default=None, ge=1)
    is_popular: Optional[bool] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None
