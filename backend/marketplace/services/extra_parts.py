"""Mid-job extra parts.

The assigned contractor may ask for parts beyond the accepted bid while the
job is under way; the customer approves or rejects each request. Approved
parts add to what the customer pays, and payment is blocked while any
request is still pending.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..models import Bid, Booking, BookingStatus, ChangeRequestStatus, ExtraPart
from ..models.booking_status import TERMINAL_STATUSES
from ..realtime import bus
from ..schemas.actor import Actor, Role
from ..utils.clock import utcnow
from ..utils.errors import (
    AlreadyResolved,
    IllegalTransition,
    InvalidRequest,
    NotAuthorized,
    NotFound,
    PaymentBlocked,
    Terminal,
)

logger = logging.getLogger(__name__)

REQUESTABLE_STATUSES = frozenset(
    {
        BookingStatus.CONTRACTOR_ASSIGNED,
        BookingStatus.CONTRACTOR_ARRIVING,
        BookingStatus.WORK_IN_PROGRESS,
    }
)
MAX_REASON_LENGTH = 500
CENT = Decimal("0.01")


@dataclass(frozen=True)
class AmountDue:
    booking_id: int
    bid_amount: Decimal
    extra_parts_total: Decimal
    pending_extra_parts: int

    @property
    def total(self) -> Decimal:
        return self.bid_amount + self.extra_parts_total

    @property
    def can_pay(self) -> bool:
        return self.pending_extra_parts == 0


def _get_booking(db: Session, booking_id: int) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise NotFound(f"Booking {booking_id} not found", {"booking_id": "not_found"})
    return booking


def _clean_part(
    part_name: Any, quantity: Any, unit_price: Any, reason: Any
) -> Tuple[str, int, Decimal, str]:
    errors = {}
    name = str(part_name or "").strip()
    if not name:
        errors["part_name"] = "required"
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        errors["quantity"] = "must_be_positive"
    try:
        price = Decimal(str(unit_price)).quantize(CENT)
        if price <= 0:
            errors["unit_price"] = "must_be_positive"
    except (InvalidOperation, ValueError):
        price = Decimal("0")
        errors["unit_price"] = "invalid"
    why = str(reason or "").strip()
    if not why:
        errors["reason"] = "required"
    elif len(why) > MAX_REASON_LENGTH:
        errors["reason"] = "too_long"
    if errors:
        raise InvalidRequest("Extra parts request is incomplete or invalid", errors)
    return name, quantity, price, why


def _notify(part: ExtraPart, booking: Booking, notice_type: str) -> None:
    bus.publish_notice(
        notice_type,
        booking.id,
        [booking.contractor_id],
        extra_part_id=part.id,
        part_name=part.part_name,
        total_price=str(part.total_price),
        status=ChangeRequestStatus(part.status).value,
    )


def request_extra_part(
    db: Session,
    booking_id: int,
    actor: Actor,
    part_name: str,
    quantity: int,
    unit_price: Any,
    reason: str,
    photo_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ExtraPart:
    now = now or utcnow()
    name, qty, price, why = _clean_part(part_name, quantity, unit_price, reason)
    booking = _get_booking(db, booking_id)
    current = BookingStatus(booking.status)
    if current in TERMINAL_STATUSES:
        raise Terminal(f"Booking {booking.id} is {current.value}", {"status": current.value})
    if current not in REQUESTABLE_STATUSES:
        raise IllegalTransition(
            "Extra parts can only be requested while the job is under way",
            {"status": current.value},
        )
    if actor.role != Role.CONTRACTOR or actor.id != booking.contractor_id:
        raise NotAuthorized(
            "Only the assigned contractor can request extra parts",
            {"actor": "not_assigned_contractor"},
        )

    part = ExtraPart(
        booking_id=booking.id,
        contractor_id=actor.id,
        part_name=name,
        quantity=qty,
        unit_price=price,
        total_price=(price * qty).quantize(CENT),
        reason=why,
        photo_url=photo_url,
        created_at=now,
        updated_at=now,
    )
    db.add(part)
    db.commit()
    db.refresh(part)
    logger.info(
        "Extra part %s requested on booking %s: %s x%s (%s)",
        part.id,
        booking.id,
        name,
        qty,
        part.total_price,
    )
    _notify(part, booking, "extra_part_requested")
    return part


def resolve_extra_part(
    db: Session,
    booking_id: int,
    part_id: int,
    actor: Actor,
    approve: bool,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ExtraPart:
    """Customer decision on a pending extra part; first decision wins."""
    now = now or utcnow()
    booking = _get_booking(db, booking_id)
    part = db.get(ExtraPart, part_id)
    if part is None or part.booking_id != booking.id:
        raise NotFound(
            f"Extra part {part_id} not found on booking {booking_id}", {"extra_part_id": "not_found"}
        )
    if booking.status in TERMINAL_STATUSES:
        raise Terminal(f"Booking {booking.id} is {booking.status.value}", {"status": booking.status.value})
    if actor.role != Role.CUSTOMER or actor.id != booking.customer_id:
        raise NotAuthorized(
            "Only the customer who posted this job can decide on extra parts",
            {"booking_id": "not_owner"},
        )

    outcome = ChangeRequestStatus.APPROVED if approve else ChangeRequestStatus.REJECTED
    res = db.execute(
        update(ExtraPart)
        .where(ExtraPart.id == part.id, ExtraPart.status == ChangeRequestStatus.PENDING)
        .values(
            status=outcome,
            customer_notes=notes,
            resolved_at=now,
            updated_at=now,
            version=ExtraPart.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.rollback()
        db.refresh(part)
        raise AlreadyResolved(
            f"Extra part {part.id} is already {ChangeRequestStatus(part.status).value}",
            {"extra_part_id": ChangeRequestStatus(part.status).value},
        )
    db.commit()
    db.refresh(part)
    logger.info("Extra part %s on booking %s %s", part.id, booking.id, outcome.value)
    _notify(part, booking, "extra_part_resolved")
    return part


def extra_parts_for(db: Session, booking_id: int) -> List[ExtraPart]:
    _get_booking(db, booking_id)
    return (
        db.query(ExtraPart)
        .filter(ExtraPart.booking_id == booking_id)
        .order_by(ExtraPart.created_at.desc(), ExtraPart.id.desc())
        .all()
    )


def amount_due(db: Session, booking: Booking) -> AmountDue:
    """Accepted bid plus approved extra parts."""
    bid_amount = Decimal("0")
    if booking.accepted_bid_id is not None:
        amount = db.execute(select(Bid.amount).where(Bid.id == booking.accepted_bid_id)).scalar()
        bid_amount = Decimal(str(amount or 0))
    approved = db.execute(
        select(func.coalesce(func.sum(ExtraPart.total_price), 0)).where(
            ExtraPart.booking_id == booking.id,
            ExtraPart.status == ChangeRequestStatus.APPROVED,
        )
    ).scalar()
    pending = db.execute(
        select(func.count(ExtraPart.id)).where(
            ExtraPart.booking_id == booking.id,
            ExtraPart.status == ChangeRequestStatus.PENDING,
        )
    ).scalar()
    return AmountDue(
        booking_id=booking.id,
        bid_amount=bid_amount.quantize(CENT),
        extra_parts_total=Decimal(str(approved)).quantize(CENT),
        pending_extra_parts=int(pending or 0),
    )


def ensure_payable(db: Session, booking: Booking) -> AmountDue:
    due = amount_due(db, booking)
    if not due.can_pay:
        raise PaymentBlocked(
            "Extra parts require customer approval before payment",
            {"extra_parts": "pending_approval"},
        )
    return due
