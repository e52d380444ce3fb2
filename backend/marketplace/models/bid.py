import enum
from decimal import Decimal

from sqlalchemy import (
    Column,
    Integer,
    ForeignKey,
    Numeric,
    String,
    DateTime,
    JSON,
    Index,
    text,
)
from sqlalchemy.orm import relationship

from .base import BaseModel
from .types import CanonicalEnum


class BidStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


# Forward-only transitions; nothing ever returns to PENDING.
BID_TRANSITIONS = {
    BidStatus.PENDING: frozenset({BidStatus.ACCEPTED, BidStatus.REJECTED, BidStatus.EXPIRED}),
    BidStatus.ACCEPTED: frozenset(),
    BidStatus.REJECTED: frozenset(),
    BidStatus.EXPIRED: frozenset(),
}

LIVE_BID_STATUSES = (BidStatus.PENDING, BidStatus.ACCEPTED)

_LIVE_BID_PREDICATE = "status IN ('pending', 'accepted')"


class Bid(BaseModel):
    __tablename__ = "bids"
    __table_args__ = (
        # One live bid per contractor per booking; resolved bids stay as history
        Index(
            "uq_bids_live_contractor_booking",
            "booking_id",
            "contractor_id",
            unique=True,
            sqlite_where=text(_LIVE_BID_PREDICATE),
            postgresql_where=text(_LIVE_BID_PREDICATE),
        ),
        Index("ix_bids_status_expires_at", "status", "expires_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    contractor_id = Column(Integer, nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    eta_minutes = Column(Integer, nullable=False)
    note = Column(String, nullable=True)
    # [{"name": str, "cost": str}]; costs kept as strings to preserve Decimal precision
    materials = Column(JSON, nullable=False, default=list)
    status = Column(
        CanonicalEnum(BidStatus, name="bidstatus"),
        nullable=False,
        default=BidStatus.PENDING,
    )
    # Immutable once the bid is created
    expires_at = Column(DateTime, nullable=False)
    rejection_reason = Column(String, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    booking = relationship("Booking", back_populates="bids")

    def __init__(self, **kwargs):
        kwargs.setdefault("status", BidStatus.PENDING)
        kwargs.setdefault("materials", [])
        kwargs.setdefault("version", 1)
        super().__init__(**kwargs)

    @property
    def materials_total(self) -> Decimal:
        return sum((Decimal(str(m.get("cost", 0))) for m in (self.materials or [])), Decimal("0"))
