from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from uuid import UUID

from pydantic import BaseModel, Field


class TierCreate(BaseModel):
    name: str
    min_spend: Optional[Decimal] = Field(default=None, ge=0)
    cashback_percent: Decimal = Field(ge=0, le=100)
    evaluation_period: Literal["ANNUAL", "LIFETIME"] = "ANNUAL"

    is_active: bool = True
    sort_hint: int = 0


class TierUpdate(BaseModel):
    name: Optional[str] = None
    min_spend: Optional[Decimal] = Field(default=None, ge=0)
    cashback_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    evaluation_period: Optional[Literal["ANNUAL", "LIFETIME"]] = None

    is_active: Optional[bool] = None
    sort_hint: Optional[int] = None


class TierOut(BaseModel):
    id: UUID
    merchant_id: str

    name: str
    min_spend: Optional[Decimal] = None
    cashback_percent: Decimal
    evaluation_period: str

    is_active: bool
    sort_hint: int = 0

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TierDeleteOut(BaseModel):
    deleted: bool
    deactivated: bool


class TierDistributionOut(BaseModel):
    tier_id: UUID
    name: str
    cashback_percent: Decimal
    is_active: bool

    member_count: int
    percentage: float
    avg_lifetime_spending: Decimal
    avg_yearly_spending: Decimal
