from .booking import (
    BookingCreate,
    BookingResponse,
    BookingWithProgress,
    ContractorBookingView,
    AdvanceRequest,
    CancelRequest,
)
from .bid import BidCreate, BidRead, BidReject, ActiveBidRead, AcceptBidResponse, MaterialItem
from .events import ChangeEvent, StageEvent
from .actor import Actor, Role, SYSTEM_ACTOR
from .change_request import (
    AmountDueRead,
    ExtraPartCreate,
    ExtraPartDecision,
    ExtraPartRead,
    RescheduleCreate,
    RescheduleRead,
)
