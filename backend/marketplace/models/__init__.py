from .booking import Booking
from .booking_status import (
    BookingStatus,
    BookingTier,
    DisplayStage,
    PaymentState,
    Urgency,
    BOOKING_STATUS_ORDER,
    TERMINAL_STATUSES,
    display_stage_for,
)
from .bid import Bid, BidStatus, BID_TRANSITIONS, LIVE_BID_STATUSES
from .change_request import ChangeRequestStatus, ExtraPart, RescheduleRequest

__all__ = [
    "Booking",
    "BookingStatus",
    "BookingTier",
    "DisplayStage",
    "PaymentState",
    "Urgency",
    "BOOKING_STATUS_ORDER",
    "TERMINAL_STATUSES",
    "display_stage_for",
    "Bid",
    "BidStatus",
    "BID_TRANSITIONS",
    "LIVE_BID_STATUSES",
    "ChangeRequestStatus",
    "ExtraPart",
    "RescheduleRequest",
]
