from datetime import datetime
from typing import List, Optional

from uuid import UUID

from pydantic import BaseModel

from cashback_engine.schemas.order_event import OrderPaidEvent


class HistoricalOrder(OrderPaidEvent):
    createdAt: datetime


class OrderImportRequest(BaseModel):
    startDate: datetime
    endDate: datetime
    updateTiers: bool = True
    # when omitted, orders are paged from the platform
    orders: Optional[List[HistoricalOrder]] = None


class OrderImportOut(BaseModel):
    id: UUID
    merchant_id: str
    status: str

    start_date: datetime
    end_date: datetime
    update_tiers: bool

    total_orders: int
    processed_orders: int
    new_transactions: int
    skipped_transactions: int
    new_customers: int
    tiers_updated: int
    errors: Optional[List[str]] = None

    started_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True
