# backend/marketplace/models/change_request.py

import enum

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)

from .base import BaseModel
from .types import CanonicalEnum


class ChangeRequestStatus(str, enum.Enum):
    """Shared by mid-job extra-parts and reschedule requests."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ExtraPart(BaseModel):
    """Additional part the assigned contractor asks the customer to pay for."""

    __tablename__ = "extra_parts"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    contractor_id = Column(Integer, nullable=False, index=True)
    part_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    reason = Column(Text, nullable=False)
    photo_url = Column(String, nullable=True)
    status = Column(
        CanonicalEnum(ChangeRequestStatus, name="changerequeststatus"),
        nullable=False,
        default=ChangeRequestStatus.PENDING,
        index=True,
    )
    customer_notes = Column(Text, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    def __init__(self, **kwargs):
        kwargs.setdefault("status", ChangeRequestStatus.PENDING)
        kwargs.setdefault("version", 1)
        super().__init__(**kwargs)


class RescheduleRequest(BaseModel):
    """Proposed new appointment time; the other party approves or rejects it."""

    __tablename__ = "reschedule_requests"
    __table_args__ = (
        # At most one open proposal per booking
        Index(
            "uq_reschedule_pending_booking",
            "booking_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    requested_by = Column(Integer, nullable=False)
    requested_by_role = Column(String, nullable=False)
    new_scheduled_at = Column(DateTime, nullable=False)
    previous_scheduled_at = Column(DateTime, nullable=True)
    reason = Column(Text, nullable=False)
    status = Column(
        CanonicalEnum(ChangeRequestStatus, name="changerequeststatus"),
        nullable=False,
        default=ChangeRequestStatus.PENDING,
    )
    resolved_by = Column(Integer, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    def __init__(self, **kwargs):
        kwargs.setdefault("status", ChangeRequestStatus.PENDING)
        kwargs.setdefault("version", 1)
        super().__init__(**kwargs)
