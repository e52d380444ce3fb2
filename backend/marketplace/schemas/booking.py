from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal

from ..models.booking_status import (
    BookingStatus,
    BookingTier,
    DisplayStage,
    PaymentState,
    Urgency,
)
from ..utils.stage_labels import stage_label, stage_progress


# Properties to receive when a customer posts a job
class BookingCreate(BaseModel):
    service_type: str = Field(min_length=1)
    tier: BookingTier = BookingTier.STANDARD
    urgency: Urgency = Urgency.NORMAL
    scheduled_at: Optional[datetime] = None
    asap: bool = False
    price_range_min: Optional[Decimal] = None
    price_range_max: Optional[Decimal] = None
    description: Optional[str] = None
    service_answers: Dict[str, Any] = Field(default_factory=dict)
    image_urls: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_schedule_and_range(self) -> "BookingCreate":
        if not self.asap and self.scheduled_at is None:
            raise ValueError("scheduled_at is required unless asap is set")
        lo, hi = self.price_range_min, self.price_range_max
        if lo is not None and hi is not None and lo > hi:
            raise ValueError("price_range_min must not exceed price_range_max")
        return self


class AdvanceRequest(BaseModel):
    target: BookingStatus


class CancelRequest(BaseModel):
    reason: Optional[str] = None


# Properties to return to either party
class BookingResponse(BaseModel):
    id: int
    customer_id: int
    contractor_id: Optional[int] = None
    accepted_bid_id: Optional[int] = None
    service_type: str
    tier: BookingTier
    urgency: Urgency
    scheduled_at: Optional[datetime] = None
    asap: bool
    price_range_min: Optional[Decimal] = None
    price_range_max: Optional[Decimal] = None
    description: Optional[str] = None
    service_answers: Dict[str, Any] = Field(default_factory=dict)
    image_urls: List[str] = Field(default_factory=list)
    status: BookingStatus
    # Derived from status + payment_state on every read
    stage: DisplayStage
    payment_state: PaymentState
    status_changed_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    version: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class BookingWithProgress(BookingResponse):
    stage_label: str = ""
    progress: int = 0

    @model_validator(mode="after")
    def fill_presentation(self) -> "BookingWithProgress":
        self.stage_label = stage_label(self.stage)
        self.progress = stage_progress(self.stage)
        return self


# Pre-assignment view for contractors deciding whether to bid
class ContractorBookingView(BaseModel):
    id: int
    service_type: str
    tier: BookingTier
    urgency: Urgency
    scheduled_at: Optional[datetime] = None
    asap: bool
    price_range_min: Optional[Decimal] = None
    price_range_max: Optional[Decimal] = None
    description: Optional[str] = None
    service_answers: Dict[str, Any] = Field(default_factory=dict)
    image_urls: List[str] = Field(default_factory=list)
    status: BookingStatus
    stage: DisplayStage
    created_at: datetime

    model_config = {"from_attributes": True}
