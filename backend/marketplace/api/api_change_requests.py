from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import logging

from .. import crud, models, schemas
from ..schemas.actor import Actor, Role
from ..services import extra_parts, reschedule
from ..utils import error_response
from ..utils.errors import MarketplaceError
from .dependencies import get_current_actor, get_current_contractor, get_current_customer, get_db

router = APIRouter(tags=["change-requests"])
logger = logging.getLogger(__name__)


def _db_error(booking_id: int, action: str):
    logger.exception("Database error during %s for booking %s", action, booking_id)
    return error_response(
        "Internal Server Error",
        {"booking_id": "db_error"},
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def _participant_booking(db: Session, booking_id: int, actor: Actor) -> models.Booking:
    booking = crud.booking.get_booking(db, booking_id)
    if booking is None:
        raise error_response("Booking not found", {"booking_id": "not_found"}, status.HTTP_404_NOT_FOUND)
    allowed = (
        actor.role in (Role.ADMIN, Role.SYSTEM)
        or (actor.role == Role.CUSTOMER and booking.customer_id == actor.id)
        or (actor.role == Role.CONTRACTOR and booking.contractor_id == actor.id)
    )
    if not allowed:
        raise error_response(
            "Only the customer and the assigned contractor can see this booking's requests",
            {"booking_id": "not_participant"},
            status.HTTP_403_FORBIDDEN,
        )
    return booking


@router.post(
    "/bookings/{booking_id}/extra-parts",
    response_model=schemas.ExtraPartRead,
    status_code=status.HTTP_201_CREATED,
)
def request_extra_part(
    booking_id: int,
    body: schemas.ExtraPartCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_contractor),
):
    try:
        part = extra_parts.request_extra_part(
            db,
            booking_id,
            actor,
            body.part_name,
            body.quantity,
            body.unit_price,
            body.reason,
            photo_url=body.photo_url,
        )
    except MarketplaceError as exc:
        raise exc.to_http()
    except SQLAlchemyError:
        raise _db_error(booking_id, "extra part request")
    return schemas.ExtraPartRead.model_validate(part)


@router.get("/bookings/{booking_id}/extra-parts", response_model=List[schemas.ExtraPartRead])
def list_extra_parts(
    booking_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    _participant_booking(db, booking_id, actor)
    parts = extra_parts.extra_parts_for(db, booking_id)
    return [schemas.ExtraPartRead.model_validate(p) for p in parts]


def _resolve_part(db, booking_id, part_id, actor, approve, body: Optional[schemas.ExtraPartDecision]):
    try:
        part = extra_parts.resolve_extra_part(
            db, booking_id, part_id, actor, approve, notes=body.notes if body else None
        )
    except MarketplaceError as exc:
        raise exc.to_http()
    except SQLAlchemyError:
        raise _db_error(booking_id, "extra part decision")
    return schemas.ExtraPartRead.model_validate(part)


@router.post(
    "/bookings/{booking_id}/extra-parts/{part_id}/approve",
    response_model=schemas.ExtraPartRead,
)
def approve_extra_part(
    booking_id: int,
    part_id: int,
    body: Optional[schemas.ExtraPartDecision] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_customer),
):
    return _resolve_part(db, booking_id, part_id, actor, True, body)


@router.post(
    "/bookings/{booking_id}/extra-parts/{part_id}/reject",
    response_model=schemas.ExtraPartRead,
)
def reject_extra_part(
    booking_id: int,
    part_id: int,
    body: Optional[schemas.ExtraPartDecision] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_customer),
):
    return _resolve_part(db, booking_id, part_id, actor, False, body)


@router.get("/bookings/{booking_id}/amount-due", response_model=schemas.AmountDueRead)
def read_amount_due(
    booking_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """What the customer pays: the accepted bid plus approved extra parts."""
    booking = _participant_booking(db, booking_id, actor)
    return schemas.AmountDueRead.model_validate(extra_parts.amount_due(db, booking))


@router.post(
    "/bookings/{booking_id}/reschedule-requests",
    response_model=schemas.RescheduleRead,
    status_code=status.HTTP_201_CREATED,
)
def request_reschedule(
    booking_id: int,
    body: schemas.RescheduleCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        req = reschedule.request_reschedule(
            db, booking_id, actor, body.new_scheduled_at, body.reason
        )
    except MarketplaceError as exc:
        raise exc.to_http()
    except SQLAlchemyError:
        raise _db_error(booking_id, "reschedule request")
    return schemas.RescheduleRead.model_validate(req)


@router.get(
    "/bookings/{booking_id}/reschedule-requests",
    response_model=List[schemas.RescheduleRead],
)
def list_reschedule_requests(
    booking_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    _participant_booking(db, booking_id, actor)
    return [
        schemas.RescheduleRead.model_validate(r)
        for r in reschedule.reschedule_requests_for(db, booking_id)
    ]


def _resolve_reschedule(db, booking_id, request_id, actor, approve):
    try:
        req = reschedule.resolve_reschedule(db, booking_id, request_id, actor, approve)
    except MarketplaceError as exc:
        raise exc.to_http()
    except SQLAlchemyError:
        raise _db_error(booking_id, "reschedule decision")
    return schemas.RescheduleRead.model_validate(req)


@router.post(
    "/bookings/{booking_id}/reschedule-requests/{request_id}/approve",
    response_model=schemas.RescheduleRead,
)
def approve_reschedule(
    booking_id: int,
    request_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return _resolve_reschedule(db, booking_id, request_id, actor, True)


@router.post(
    "/bookings/{booking_id}/reschedule-requests/{request_id}/reject",
    response_model=schemas.RescheduleRead,
)
def reject_reschedule(
    booking_id: int,
    request_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return _resolve_reschedule(db, booking_id, request_id, actor, False)
