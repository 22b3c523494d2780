from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from uuid import UUID

from pydantic import BaseModel, Field


class CustomerCreate(BaseModel):
    externalCustomerId: str
    email: Optional[str] = None
    currency: str = "USD"


class CustomerOut(BaseModel):
    id: UUID
    merchant_id: str
    external_customer_id: str
    email: Optional[str] = None
    currency: str

    store_credit_balance: Decimal
    total_earned: Decimal
    last_synced_at: Optional[datetime] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MembershipOut(BaseModel):
    id: UUID
    tier_id: UUID
    is_active: bool

    start_date: datetime
    end_date: Optional[datetime] = None

    assignment_type: str
    assigned_by: Optional[str] = None
    reason: Optional[str] = None
    previous_tier_id: Optional[UUID] = None

    class Config:
        from_attributes = True


class TierChangeOut(BaseModel):
    id: UUID
    from_tier_id: Optional[UUID] = None
    to_tier_id: UUID
    change_type: str
    reason: Optional[str] = None
    triggered_by: str
    snapshot: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SpendingOut(BaseModel):
    lifetime_spending: Decimal
    trailing_year_spending: Decimal


class NextTierProgressOut(BaseModel):
    next_tier_id: Optional[UUID] = None
    next_tier_name: Optional[str] = None
    next_tier_cashback_percent: Optional[Decimal] = None
    current_spending: Decimal
    required_spending: Optional[Decimal] = None
    remaining_spending: Optional[Decimal] = None
    progress_percentage: Decimal


class CustomerTierInfoOut(BaseModel):
    customer: CustomerOut
    membership: Optional[MembershipOut] = None
    tier_name: Optional[str] = None
    cashback_percent: Optional[Decimal] = None
    spending: SpendingOut
    progress: Optional[NextTierProgressOut] = None
    recent_changes: List[TierChangeOut] = Field(default_factory=list)


class ManualTierAssign(BaseModel):
    tier_id: UUID
    actor: str
    reason: Optional[str] = None
    end_date: Optional[datetime] = None


class EvaluationOut(BaseModel):
    customer_id: UUID
    changed: bool
    change_type: Optional[str] = None
    tier_id: Optional[UUID] = None


class CashbackTransactionOut(BaseModel):
    id: UUID
    order_id: str
    currency: str

    eligible_amount: Decimal
    cashback_amount: Decimal
    cashback_percent_snapshot: Decimal

    status: str
    source: str
    external_transaction_id: Optional[str] = None
    sync_error: Optional[str] = None

    created_at: datetime

    class Config:
        from_attributes = True
