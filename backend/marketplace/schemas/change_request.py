from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from ..models.change_request import ChangeRequestStatus


# Quantity and price checks live in the service so every entry point gets the same errors
class ExtraPartCreate(BaseModel):
    part_name: str
    quantity: int = 1
    unit_price: Decimal
    reason: str
    photo_url: Optional[str] = None


class ExtraPartDecision(BaseModel):
    notes: Optional[str] = None


class ExtraPartRead(BaseModel):
    id: int
    booking_id: int
    contractor_id: int
    part_name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    reason: str
    photo_url: Optional[str] = None
    status: ChangeRequestStatus
    customer_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    version: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class AmountDueRead(BaseModel):
    booking_id: int
    bid_amount: Decimal
    extra_parts_total: Decimal
    pending_extra_parts: int
    total: Decimal
    can_pay: bool

    model_config = {"from_attributes": True}


class RescheduleCreate(BaseModel):
    new_scheduled_at: datetime
    reason: str


class RescheduleRead(BaseModel):
    id: int
    booking_id: int
    requested_by: int
    requested_by_role: str
    new_scheduled_at: datetime
    previous_scheduled_at: Optional[datetime] = None
    reason: str
    status: ChangeRequestStatus
    resolved_by: Optional[int] = None
    resolved_at: Optional[datetime] = None
    version: int
    created_at: datetime

    model_config = {"from_attributes": True}
