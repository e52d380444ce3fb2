"""Appointment reschedule requests.

Either participant may propose a new time once a contractor is assigned and
before work starts. Only the other party can answer, and at most one
proposal per booking is open at a time. Approving writes the new time onto
the booking with the same status and version guard the stage machine uses.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import Booking, BookingStatus, ChangeRequestStatus, RescheduleRequest
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
    RequestPending,
    Terminal,
)

logger = logging.getLogger(__name__)

RESCHEDULABLE_STATUSES = frozenset(
    {
        BookingStatus.CONTRACTOR_ASSIGNED,
        BookingStatus.CONTRACTOR_ARRIVING,
    }
)
MAX_REASON_LENGTH = 500


def _get_booking(db: Session, booking_id: int) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise NotFound(f"Booking {booking_id} not found", {"booking_id": "not_found"})
    return booking


def _participant_role(booking: Booking, actor: Actor) -> Optional[Role]:
    if actor.role == Role.CUSTOMER and actor.id == booking.customer_id:
        return Role.CUSTOMER
    if actor.role == Role.CONTRACTOR and actor.id == booking.contractor_id:
        return Role.CONTRACTOR
    return None


def _check_reschedulable(booking: Booking) -> None:
    current = BookingStatus(booking.status)
    if current in TERMINAL_STATUSES:
        raise Terminal(f"Booking {booking.id} is {current.value}", {"status": current.value})
    if current not in RESCHEDULABLE_STATUSES:
        raise IllegalTransition(
            "Appointments can only be moved after assignment and before work starts",
            {"status": current.value},
        )


def _pending_for(db: Session, booking_id: int) -> Optional[RescheduleRequest]:
    return (
        db.query(RescheduleRequest)
        .filter(
            RescheduleRequest.booking_id == booking_id,
            RescheduleRequest.status == ChangeRequestStatus.PENDING,
        )
        .first()
    )


def _notify(req: RescheduleRequest, booking: Booking, notice_type: str) -> None:
    bus.publish_notice(
        notice_type,
        booking.id,
        [booking.contractor_id],
        reschedule_request_id=req.id,
        requested_by_role=req.requested_by_role,
        new_scheduled_at=req.new_scheduled_at.isoformat(),
        status=ChangeRequestStatus(req.status).value,
    )


def request_reschedule(
    db: Session,
    booking_id: int,
    actor: Actor,
    new_scheduled_at: datetime,
    reason: str,
    now: Optional[datetime] = None,
) -> RescheduleRequest:
    now = now or utcnow()
    if new_scheduled_at is not None and new_scheduled_at.tzinfo is not None:
        new_scheduled_at = new_scheduled_at.astimezone(timezone.utc).replace(tzinfo=None)
    errors = {}
    if new_scheduled_at is None or new_scheduled_at <= now:
        errors["new_scheduled_at"] = "must_be_future"
    why = str(reason or "").strip()
    if not why:
        errors["reason"] = "required"
    elif len(why) > MAX_REASON_LENGTH:
        errors["reason"] = "too_long"
    if errors:
        raise InvalidRequest("Reschedule request is incomplete or invalid", errors)

    booking = _get_booking(db, booking_id)
    _check_reschedulable(booking)
    role = _participant_role(booking, actor)
    if role is None:
        raise NotAuthorized(
            "Only the customer or the assigned contractor can reschedule",
            {"actor": "not_participant"},
        )
    if _pending_for(db, booking.id) is not None:
        raise RequestPending(
            f"Booking {booking.id} already has a reschedule request awaiting an answer",
            {"booking_id": "reschedule_pending"},
        )

    req = RescheduleRequest(
        booking_id=booking.id,
        requested_by=actor.id,
        requested_by_role=role.value,
        new_scheduled_at=new_scheduled_at,
        previous_scheduled_at=booking.scheduled_at,
        reason=why,
        created_at=now,
        updated_at=now,
    )
    db.add(req)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise RequestPending(
            f"Booking {booking.id} already has a reschedule request awaiting an answer",
            {"booking_id": "reschedule_pending"},
        ) from exc
    db.refresh(req)
    logger.info(
        "Reschedule %s requested on booking %s by %s/%s for %s",
        req.id,
        booking.id,
        role.value,
        actor.id,
        new_scheduled_at.isoformat(),
    )
    _notify(req, booking, "reschedule_requested")
    return req


def resolve_reschedule(
    db: Session,
    booking_id: int,
    request_id: int,
    actor: Actor,
    approve: bool,
    now: Optional[datetime] = None,
) -> RescheduleRequest:
    """Answer the other party's proposal; approval moves the appointment."""
    now = now or utcnow()
    booking = _get_booking(db, booking_id)
    req = db.get(RescheduleRequest, request_id)
    if req is None or req.booking_id != booking.id:
        raise NotFound(
            f"Reschedule request {request_id} not found on booking {booking_id}",
            {"reschedule_request_id": "not_found"},
        )
    role = _participant_role(booking, actor)
    if role is None or role.value == req.requested_by_role:
        raise NotAuthorized(
            "Only the other party can answer a reschedule request",
            {"actor": "not_counterparty"},
        )
    if req.status != ChangeRequestStatus.PENDING:
        raise AlreadyResolved(
            f"Reschedule request {req.id} is already {ChangeRequestStatus(req.status).value}",
            {"reschedule_request_id": ChangeRequestStatus(req.status).value},
        )
    if approve:
        _check_reschedulable(booking)

    outcome = ChangeRequestStatus.APPROVED if approve else ChangeRequestStatus.REJECTED
    res = db.execute(
        update(RescheduleRequest)
        .where(
            RescheduleRequest.id == req.id,
            RescheduleRequest.status == ChangeRequestStatus.PENDING,
        )
        .values(
            status=outcome,
            resolved_by=actor.id,
            resolved_at=now,
            updated_at=now,
            version=RescheduleRequest.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.rollback()
        raise AlreadyResolved(
            f"Reschedule request {req.id} was answered by someone else",
            {"reschedule_request_id": "stale"},
        )

    if approve:
        moved = db.execute(
            update(Booking)
            .where(
                Booking.id == booking.id,
                Booking.status.in_(list(RESCHEDULABLE_STATUSES)),
                Booking.version == booking.version,
            )
            .values(
                scheduled_at=req.new_scheduled_at,
                asap=False,
                updated_at=now,
                version=Booking.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            db.rollback()
            logger.info("Booking %s changed while approving reschedule %s", booking.id, req.id)
            raise AlreadyResolved(
                f"Booking {booking.id} was updated by someone else; refresh and try again",
                {"booking_id": "stale"},
            )

    db.commit()
    db.refresh(req)
    db.refresh(booking)
    logger.info(
        "Reschedule %s on booking %s %s by %s/%s",
        req.id,
        booking.id,
        outcome.value,
        actor.role.value,
        actor.id,
    )
    if approve:
        bus.fanout_booking(booking)
    _notify(req, booking, "reschedule_resolved")
    return req


def reschedule_requests_for(db: Session, booking_id: int) -> List[RescheduleRequest]:
    _get_booking(db, booking_id)
    return (
        db.query(RescheduleRequest)
        .filter(RescheduleRequest.booking_id == booking_id)
        .order_by(RescheduleRequest.created_at.desc(), RescheduleRequest.id.desc())
        .all()
    )
