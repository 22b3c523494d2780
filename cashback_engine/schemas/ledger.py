from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from uuid import UUID

from pydantic import BaseModel, Field


class LedgerEntryOut(BaseModel):
    id: UUID
    sequence: int

    amount: Decimal
    balance_after: Decimal

    type: str
    source: str

    external_reference: Optional[str] = None
    description: Optional[str] = None

    sync_status: Optional[str] = None
    sync_error: Optional[str] = None

    reconciled_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CreditAdjustment(BaseModel):
    amount: Decimal = Field(gt=0)
    direction: Literal["CREDIT", "DEBIT"]
    actor: str
    description: Optional[str] = None


class CreditAdjustmentOut(BaseModel):
    entry: LedgerEntryOut
    synced: bool
    sync_error: Optional[str] = None


class InitialBalanceImport(BaseModel):
    amount: Decimal = Field(ge=0)
    reference: Optional[str] = None


class SyncOut(BaseModel):
    customer_id: UUID
    previous_balance: Decimal
    external_balance: Decimal
    delta: Decimal
    updated: bool
    entry: Optional[LedgerEntryOut] = None
    unsynced_amount: Decimal = Decimal("0")

    class Config:
        from_attributes = True


class LedgerVerificationOut(BaseModel):
    ok: bool
    entries: int
    replayed_balance: Decimal
    cached_balance: Decimal
    first_broken_sequence: Optional[int] = None
    unsynced_amount: Decimal = Decimal("0")


class BulkSyncErrorOut(BaseModel):
    customer_id: str
    error: str


class BulkSyncOut(BaseModel):
    processed: int
    updated: int
    errors: int
    error_details: List[BulkSyncErrorOut] = Field(default_factory=list)
