from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from ..models.bid import BidStatus


class MaterialItem(BaseModel):
    name: str
    cost: Decimal


class BidCreate(BaseModel):
    # Range checks live in the ledger so every entry point gets the same errors
    amount: Decimal
    eta_minutes: int
    note: Optional[str] = None
    materials: List[MaterialItem] = Field(default_factory=list)


class BidReject(BaseModel):
    reason: Optional[str] = None


class BidRead(BaseModel):
    id: int
    booking_id: int
    contractor_id: int
    amount: Decimal
    eta_minutes: int
    note: Optional[str] = None
    materials: List[MaterialItem] = Field(default_factory=list)
    status: BidStatus
    expires_at: datetime
    rejection_reason: Optional[str] = None
    resolved_at: Optional[datetime] = None
    version: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ActiveBidRead(BidRead):
    """Bid as shown to the customer, with the countdown evaluated at read time."""

    seconds_remaining: int
    countdown: str
    urgency_level: str


class AcceptBidResponse(BaseModel):
    booking_id: int
    booking_status: str
    contractor_id: int
    bid: BidRead
