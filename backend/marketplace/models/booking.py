# backend/marketplace/models/booking.py

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    event,
)
from sqlalchemy.orm import relationship

from .base import BaseModel
from .booking_status import (
    BookingStatus,
    BookingTier,
    DisplayStage,
    LEGACY_STATUS_ALIASES,
    PaymentState,
    Urgency,
    display_stage_for,
)
from .types import CanonicalEnum


class Booking(BaseModel):
    __tablename__ = "bookings"

    id            = Column(Integer, primary_key=True, index=True)
    customer_id   = Column(Integer, nullable=False, index=True)
    contractor_id = Column(Integer, nullable=True, index=True)
    accepted_bid_id = Column(Integer, nullable=True)

    service_type  = Column(String, nullable=False, index=True)
    tier          = Column(
        CanonicalEnum(BookingTier, name="bookingtier", aliases={"saver": "standard", "open_tender": "open", "tacklers_choice": "priority"}),
        nullable=False,
        default=BookingTier.STANDARD,
    )
    urgency       = Column(CanonicalEnum(Urgency, name="urgency"), nullable=False, default=Urgency.NORMAL)
    scheduled_at  = Column(DateTime, nullable=True)
    asap          = Column(Boolean, nullable=False, default=False)
    price_range_min = Column(Numeric(10, 2), nullable=True)
    price_range_max = Column(Numeric(10, 2), nullable=True)
    description   = Column(Text, nullable=True)
    service_answers = Column(JSON, nullable=False, default=dict)
    image_urls    = Column(JSON, nullable=False, default=list)

    status        = Column(
        CanonicalEnum(BookingStatus, name="bookingstatus", aliases=LEGACY_STATUS_ALIASES),
        nullable=False,
        default=BookingStatus.AWAITING_BIDS,
        index=True,
    )
    # Written in lockstep with status for external readers; see ``stage``
    current_stage = Column(
        CanonicalEnum(DisplayStage, name="displaystage"),
        nullable=False,
        default=DisplayStage.FINDING_CONTRACTOR,
    )
    payment_state = Column(
        CanonicalEnum(PaymentState, name="paymentstate"),
        nullable=False,
        default=PaymentState.UNPAID,
    )
    status_changed_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String, nullable=True)
    # Monotonic per-row sequence marker carried by change events
    version       = Column(Integer, nullable=False, default=1)

    bids = relationship(
        "Bid",
        back_populates="booking",
        order_by="Bid.created_at",
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("status", BookingStatus.AWAITING_BIDS)
        kwargs.setdefault("payment_state", PaymentState.UNPAID)
        kwargs.setdefault("tier", BookingTier.STANDARD)
        kwargs.setdefault("urgency", Urgency.NORMAL)
        kwargs.setdefault("version", 1)
        kwargs.setdefault("service_answers", {})
        kwargs.setdefault("image_urls", [])
        super().__init__(**kwargs)
        self.current_stage = display_stage_for(self.status, self.payment_state)

    @property
    def stage(self) -> DisplayStage:
        """Display stage recomputed from status and payment state on every read."""
        return display_stage_for(self.status, self.payment_state)

    @property
    def is_terminal(self) -> bool:
        return self.status in (BookingStatus.PAID, BookingStatus.CANCELLED)


@event.listens_for(Booking.status, "set", propagate=True)
def _sync_stage_from_status(target, value, oldvalue, initiator):  # noqa: ANN001
    target.current_stage = display_stage_for(value, target.payment_state)


@event.listens_for(Booking.payment_state, "set", propagate=True)
def _sync_stage_from_payment(target, value, oldvalue, initiator):  # noqa: ANN001
    target.current_stage = display_stage_for(target.status, value)
