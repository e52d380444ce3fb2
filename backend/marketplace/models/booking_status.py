import enum
from typing import Optional


class BookingStatus(str, enum.Enum):
    """Canonical booking lifecycle status; the only authoritative vocabulary."""
    AWAITING_BIDS = "awaiting_bids"
    CONTRACTOR_ASSIGNED = "contractor_assigned"
    CONTRACTOR_ARRIVING = "contractor_arriving"
    WORK_IN_PROGRESS = "work_in_progress"
    WORK_COMPLETED = "work_completed"
    PAID = "paid"
    CANCELLED = "cancelled"


# Ordered fulfilment path; cancellation is a side channel.
BOOKING_STATUS_ORDER = (
    BookingStatus.AWAITING_BIDS,
    BookingStatus.CONTRACTOR_ASSIGNED,
    BookingStatus.CONTRACTOR_ARRIVING,
    BookingStatus.WORK_IN_PROGRESS,
    BookingStatus.WORK_COMPLETED,
    BookingStatus.PAID,
)

TERMINAL_STATUSES = frozenset({BookingStatus.PAID, BookingStatus.CANCELLED})

# Older clients wrote several overlapping spellings for the same state.
LEGACY_STATUS_ALIASES = {
    "pending_bids": "awaiting_bids",
    "finding_contractor": "awaiting_bids",
    "assigned": "contractor_assigned",
    "arriving": "contractor_arriving",
    "work_started": "work_in_progress",
    "job_started": "work_in_progress",
    "in_progress": "work_in_progress",
    "completed": "work_completed",
    "awaiting_payment": "work_completed",
    "payment_completed": "paid",
}


class BookingTier(str, enum.Enum):
    STANDARD = "standard"
    PRIORITY = "priority"
    # Open tender posting; bids are compared like the standard tier
    OPEN = "open"


class PaymentState(str, enum.Enum):
    UNPAID = "unpaid"
    PAID = "paid"


class Urgency(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    EMERGENCY = "emergency"


class DisplayStage(str, enum.Enum):
    """Externally visible stage; always derived, never authoritative."""
    FINDING_CONTRACTOR = "finding_contractor"
    ASSIGNED = "assigned"
    ARRIVING = "arriving"
    IN_PROGRESS = "in_progress"
    AWAITING_PAYMENT = "awaiting_payment"
    PAYMENT_COMPLETED = "payment_completed"
    CANCELLED = "cancelled"


_STAGE_FOR_STATUS = {
    BookingStatus.AWAITING_BIDS: DisplayStage.FINDING_CONTRACTOR,
    BookingStatus.CONTRACTOR_ASSIGNED: DisplayStage.ASSIGNED,
    BookingStatus.CONTRACTOR_ARRIVING: DisplayStage.ARRIVING,
    BookingStatus.WORK_IN_PROGRESS: DisplayStage.IN_PROGRESS,
    BookingStatus.WORK_COMPLETED: DisplayStage.AWAITING_PAYMENT,
    BookingStatus.PAID: DisplayStage.PAYMENT_COMPLETED,
    BookingStatus.CANCELLED: DisplayStage.CANCELLED,
}


def display_stage_for(
    status: Optional[BookingStatus], payment_state: Optional[PaymentState]
) -> DisplayStage:
    """Map ``status`` plus ``payment_state`` onto the display stage.

    A recorded payment wins over a lagging status so both parties see the
    booking as paid as soon as the payment write lands.
    """
    if payment_state is not None and PaymentState(payment_state) == PaymentState.PAID:
        return DisplayStage.PAYMENT_COMPLETED
    if status is None:
        return DisplayStage.FINDING_CONTRACTOR
    return _STAGE_FOR_STATUS[BookingStatus(status)]
