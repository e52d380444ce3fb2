"""Which open jobs a contractor may see and bid on.

Pure predicates over already-loaded rows; callers do the querying.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Collection, Dict, Iterable, List, Set

from ..models import Bid, BidStatus, Booking, BookingStatus, BookingTier
from ..schemas.booking import ContractorBookingView

# Tier a contractor is enrolled in -> booking tiers they are shown
VISIBLE_TIERS: Dict[BookingTier, frozenset] = {
    BookingTier.PRIORITY: frozenset({BookingTier.PRIORITY}),
    BookingTier.STANDARD: frozenset({BookingTier.STANDARD, BookingTier.OPEN}),
    BookingTier.OPEN: frozenset({BookingTier.STANDARD, BookingTier.OPEN}),
}

# A contractor who holds a live bid or was turned down does not see the job again
_EXCLUDING_BID_STATUSES = frozenset({BidStatus.PENDING, BidStatus.ACCEPTED, BidStatus.REJECTED})


@dataclass(frozen=True)
class ContractorProfile:
    id: int
    service_types: frozenset = field(default_factory=frozenset)
    tier: BookingTier = BookingTier.STANDARD
    available: bool = True

    def offers(self, service_type: str) -> bool:
        wanted = (service_type or "").strip().lower()
        return any((s or "").strip().lower() == wanted for s in self.service_types)


def is_eligible(
    booking: Booking,
    contractor: ContractorProfile,
    contractor_bid_statuses: Collection[BidStatus] = (),
) -> bool:
    """True when ``contractor`` may see and bid on ``booking``.

    ``contractor_bid_statuses`` holds the statuses of this contractor's own
    bids on this booking.
    """
    if not contractor.available:
        return False
    if BookingStatus(booking.status) != BookingStatus.AWAITING_BIDS or booking.contractor_id is not None:
        return False
    if not contractor.offers(booking.service_type):
        return False
    if BookingTier(booking.tier) not in VISIBLE_TIERS[BookingTier(contractor.tier)]:
        return False
    return not any(BidStatus(s) in _EXCLUDING_BID_STATUSES for s in contractor_bid_statuses)


def eligible_bookings(
    bookings: Iterable[Booking],
    contractor: ContractorProfile,
    bids: Iterable[Bid] = (),
) -> List[Booking]:
    by_booking: Dict[int, Set[BidStatus]] = defaultdict(set)
    for bid in bids:
        if bid.contractor_id == contractor.id:
            by_booking[bid.booking_id].add(BidStatus(bid.status))
    return [b for b in bookings if is_eligible(b, contractor, by_booking.get(b.id, ()))]


def contractor_view(booking: Booking) -> ContractorBookingView:
    """Booking as shown to a contractor who has not been assigned yet.

    Drops the customer identity and anything tied to another contractor.
    """
    return ContractorBookingView.model_validate(booking)
