"""Booking fulfilment state machine.

``status`` moves strictly forward along :data:`BOOKING_STATUS_ORDER`, one step
at a time. Participants may cancel only while the job is still awaiting
bids; admins may cancel any non-terminal booking. The only
way into ``contractor_assigned`` is the ledger's accept step, which borrows
:func:`on_bid_accepted` for the values it writes.

Writes are conditional updates guarded on the row's ``status`` and
``version`` so two parties advancing the same booking cannot both win.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .. import models
from ..models import Bid, BidStatus, Booking, BookingStatus, PaymentState
from ..models.booking_status import BOOKING_STATUS_ORDER, DisplayStage, TERMINAL_STATUSES, display_stage_for
from ..realtime import bus
from ..schemas.actor import Actor, Role
from ..utils.clock import utcnow
from ..utils.errors import (
    AlreadyResolved,
    IllegalTransition,
    NotAuthorized,
    NotFound,
    PaymentFailed,
    Terminal,
)
from .extra_parts import ensure_payable
from .payments import PaymentGateway, PaymentGatewayError

logger = logging.getLogger(__name__)

_CONTRACTOR_DRIVEN = frozenset(
    {
        BookingStatus.CONTRACTOR_ARRIVING,
        BookingStatus.WORK_IN_PROGRESS,
        BookingStatus.WORK_COMPLETED,
    }
)


def next_status(status: BookingStatus) -> Optional[BookingStatus]:
    """The immediate successor of ``status`` on the fulfilment path."""
    status = BookingStatus(status)
    if status not in BOOKING_STATUS_ORDER:
        return None
    idx = BOOKING_STATUS_ORDER.index(status)
    if idx + 1 >= len(BOOKING_STATUS_ORDER):
        return None
    return BOOKING_STATUS_ORDER[idx + 1]


def reconcile_display_stage(booking: Booking) -> DisplayStage:
    return display_stage_for(booking.status, booking.payment_state)


def on_bid_accepted(booking: Booking, bid: Bid, now: datetime) -> Dict[str, Any]:
    """Column values that move ``booking`` into ``contractor_assigned`` for ``bid``."""
    return {
        "status": BookingStatus.CONTRACTOR_ASSIGNED,
        "current_stage": display_stage_for(BookingStatus.CONTRACTOR_ASSIGNED, booking.payment_state),
        "contractor_id": bid.contractor_id,
        "accepted_bid_id": bid.id,
        "status_changed_at": now,
        "updated_at": now,
    }


def check_transition(booking: Booking, target: BookingStatus, actor: Actor) -> None:
    """Raise unless ``actor`` may move ``booking`` to ``target`` right now."""
    current = BookingStatus(booking.status)
    target = BookingStatus(target)

    if current in TERMINAL_STATUSES:
        raise Terminal(
            f"Booking {booking.id} is {current.value}; no further transitions are allowed",
            {"status": current.value},
        )

    if target == BookingStatus.CANCELLED:
        _check_cancel_permission(booking, current, actor)
        return

    if target != next_status(current):
        raise IllegalTransition(
            f"Cannot move booking {booking.id} from {current.value} to {target.value}",
            {"target": target.value, "status": current.value},
        )

    if target == BookingStatus.CONTRACTOR_ASSIGNED:
        raise IllegalTransition(
            "A contractor is assigned by accepting one of their bids",
            {"target": target.value},
        )

    if target in _CONTRACTOR_DRIVEN:
        if actor.role != Role.CONTRACTOR or actor.id != booking.contractor_id:
            raise NotAuthorized(
                "Only the assigned contractor can update the job progress",
                {"actor": "not_assigned_contractor"},
            )
        return

    if target == BookingStatus.PAID:
        owner = actor.role == Role.CUSTOMER and actor.id == booking.customer_id
        if not owner and actor.role != Role.SYSTEM:
            raise NotAuthorized(
                "Only the customer or a payment confirmation can mark the booking paid",
                {"actor": "not_booking_owner"},
            )


def _check_cancel_permission(booking: Booking, current: BookingStatus, actor: Actor) -> None:
    # Admins may stop a job at any stage; participants only before assignment
    if actor.role == Role.ADMIN:
        return
    if current != BookingStatus.AWAITING_BIDS:
        raise IllegalTransition(
            f"Booking {booking.id} can no longer be cancelled once a contractor is assigned",
            {"target": BookingStatus.CANCELLED.value, "status": current.value},
        )
    if actor.role == Role.CUSTOMER and actor.id == booking.customer_id:
        return
    raise NotAuthorized(
        "You are not allowed to cancel this booking",
        {"actor": "not_participant"},
    )


def _get_booking(db: Session, booking_id: int) -> Booking:
    booking = db.get(models.Booking, booking_id)
    if booking is None:
        raise NotFound(f"Booking {booking_id} not found", {"booking_id": "not_found"})
    return booking


def _transition(
    db: Session,
    booking: Booking,
    target: BookingStatus,
    now: datetime,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """Conditional status write; raises ``AlreadyResolved`` if the row moved."""
    payment_state = (extra or {}).get("payment_state", booking.payment_state)
    values: Dict[str, Any] = {
        "status": target,
        "current_stage": display_stage_for(target, payment_state),
        "status_changed_at": now,
        "updated_at": now,
        "version": Booking.version + 1,
    }
    values.update(extra or {})
    res = db.execute(
        update(Booking)
        .where(
            Booking.id == booking.id,
            Booking.status == booking.status,
            Booking.version == booking.version,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.rollback()
        logger.info(
            "Booking %s changed concurrently while moving to %s", booking.id, target.value
        )
        raise AlreadyResolved(
            f"Booking {booking.id} was updated by someone else; refresh and try again",
            {"booking_id": "stale"},
        )


def advance(
    db: Session,
    booking_id: int,
    target: BookingStatus,
    actor: Actor,
    now: Optional[datetime] = None,
    reason: Optional[str] = None,
) -> Booking:
    now = now or utcnow()
    target = BookingStatus(target)
    booking = _get_booking(db, booking_id)
    prev = BookingStatus(booking.status)
    try:
        check_transition(booking, target, actor)
    except (Terminal, IllegalTransition, NotAuthorized) as exc:
        logger.warning(
            "Rejected transition booking=%s %s->%s actor=%s/%s: %s",
            booking_id,
            prev.value,
            target.value,
            actor.role.value,
            actor.id,
            exc.message,
        )
        raise

    extra: Dict[str, Any] = {}
    if target == BookingStatus.CANCELLED:
        extra["cancel_reason"] = reason
    elif target == BookingStatus.PAID:
        extra["payment_state"] = PaymentState.PAID

    _transition(db, booking, target, now, extra)

    rejected_ids = []
    if target == BookingStatus.CANCELLED:
        # Nothing may stay pending on a terminal booking
        rejected_ids = list(
            db.execute(
                select(Bid.id).where(Bid.booking_id == booking.id, Bid.status == BidStatus.PENDING)
            ).scalars()
        )
        db.execute(
            update(Bid)
            .where(Bid.id.in_(rejected_ids), Bid.status == BidStatus.PENDING)
            .values(
                status=BidStatus.REJECTED,
                rejection_reason="booking_cancelled",
                resolved_at=now,
                updated_at=now,
                version=Bid.version + 1,
            )
            .execution_options(synchronize_session=False)
        )

    db.commit()
    db.refresh(booking)
    logger.info(
        "Booking %s moved %s -> %s by %s/%s",
        booking.id,
        prev.value,
        target.value,
        actor.role.value,
        actor.id,
    )
    bus.fanout_booking(booking)
    if rejected_ids:
        bus.fanout_bids(
            db.query(models.Bid).filter(models.Bid.id.in_(rejected_ids)).order_by(models.Bid.id).all()
        )
    return booking


def cancel(
    db: Session,
    booking_id: int,
    actor: Actor,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Booking:
    return advance(db, booking_id, BookingStatus.CANCELLED, actor, now=now, reason=reason)


def mark_paid(
    db: Session,
    booking_id: int,
    actor: Actor,
    gateway: PaymentGateway,
    now: Optional[datetime] = None,
) -> Booking:
    """Confirm payment with the gateway, then move ``work_completed -> paid``.

    Refused with ``PaymentBlocked`` while an extra part awaits the customer's
    decision; the gateway is charged the bid plus approved extra parts.
    """
    now = now or utcnow()
    booking = _get_booking(db, booking_id)
    check_transition(booking, BookingStatus.PAID, actor)
    due = ensure_payable(db, booking)

    try:
        ok = gateway.mark_paid(booking.id, amount=due.total)
    except PaymentGatewayError as exc:
        raise PaymentFailed(
            f"Payment for booking {booking.id} could not be confirmed",
            {"payment": "gateway_error"},
        ) from exc
    if not ok:
        raise PaymentFailed(
            f"Payment for booking {booking.id} was declined",
            {"payment": "declined"},
        )

    _transition(
        db,
        booking,
        BookingStatus.PAID,
        now,
        {"payment_state": PaymentState.PAID},
    )
    db.commit()
    db.refresh(booking)
    logger.info("Booking %s paid", booking.id)
    bus.fanout_booking(booking)
    return booking
