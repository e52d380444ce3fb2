from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import logging

from .. import crud, models, schemas
from ..crud import crud_bid
from ..models.booking_status import BookingTier
from ..schemas.actor import Actor, Role
from ..services import booking_stage, contractor_match
from ..services.payments import PaymentGateway, get_payment_gateway
from ..utils import error_response
from ..utils.errors import MarketplaceError
from .dependencies import get_current_actor, get_current_contractor, get_current_customer, get_db

router = APIRouter(tags=["bookings"])
logger = logging.getLogger(__name__)


def _db_error(booking_id: Optional[int], action: str):
    logger.exception("Database error during %s for booking %s", action, booking_id)
    return error_response(
        "Internal Server Error",
        {"booking_id": "db_error"},
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def _can_see(booking: models.Booking, actor: Actor) -> bool:
    if actor.role in (Role.ADMIN, Role.SYSTEM):
        return True
    if actor.role == Role.CUSTOMER:
        return booking.customer_id == actor.id
    return booking.contractor_id == actor.id


@router.post(
    "/bookings",
    response_model=schemas.BookingWithProgress,
    status_code=status.HTTP_201_CREATED,
)
def create_booking(
    booking_in: schemas.BookingCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_customer),
):
    """Post a job for contractors to bid on."""
    try:
        booking = crud.booking.create_booking(db, booking_in, customer_id=actor.id)
    except SQLAlchemyError:
        raise _db_error(None, "create")
    return schemas.BookingWithProgress.model_validate(booking)


@router.get("/bookings/{booking_id}")
def read_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    booking = crud.booking.get_booking(db, booking_id)
    if booking is None:
        raise error_response(
            "Booking not found",
            {"booking_id": "not_found"},
            status.HTTP_404_NOT_FOUND,
        )
    if _can_see(booking, actor):
        return schemas.BookingWithProgress.model_validate(booking).model_dump(mode="json")
    if actor.role == Role.CONTRACTOR and booking.contractor_id is None:
        # Prospective bidders get the redacted posting
        return contractor_match.contractor_view(booking).model_dump(mode="json")
    raise error_response(
        "You are not allowed to view this booking",
        {"booking_id": "forbidden"},
        status.HTTP_403_FORBIDDEN,
    )


@router.post("/bookings/{booking_id}/cancel", response_model=schemas.BookingWithProgress)
def cancel_booking(
    booking_id: int,
    body: schemas.CancelRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        booking = booking_stage.cancel(db, booking_id, actor, reason=body.reason)
    except MarketplaceError as exc:
        raise exc.to_http()
    except SQLAlchemyError:
        raise _db_error(booking_id, "cancel")
    return schemas.BookingWithProgress.model_validate(booking)


@router.post("/bookings/{booking_id}/advance", response_model=schemas.BookingWithProgress)
def advance_booking(
    booking_id: int,
    body: schemas.AdvanceRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        booking = booking_stage.advance(db, booking_id, body.target, actor)
    except MarketplaceError as exc:
        raise exc.to_http()
    except SQLAlchemyError:
        raise _db_error(booking_id, "advance")
    return schemas.BookingWithProgress.model_validate(booking)


@router.post("/bookings/{booking_id}/pay", response_model=schemas.BookingWithProgress)
def pay_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    try:
        booking = booking_stage.mark_paid(db, booking_id, actor, gateway)
    except MarketplaceError as exc:
        raise exc.to_http()
    except SQLAlchemyError:
        raise _db_error(booking_id, "payment")
    return schemas.BookingWithProgress.model_validate(booking)


@router.get(
    "/contractors/me/available-bookings",
    response_model=List[schemas.ContractorBookingView],
)
def available_bookings(
    service_type: List[str] = Query(default=[]),
    tier: BookingTier = BookingTier.STANDARD,
    available: bool = True,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_contractor),
):
    """Open jobs this contractor may bid on.

    The contractor profile lives with the identity provider, so the caller
    states the services it offers and its tier.
    """
    profile = contractor_match.ContractorProfile(
        id=actor.id,
        service_types=frozenset(service_type),
        tier=tier,
        available=available,
    )
    if not profile.available or not profile.service_types:
        return []
    candidates = crud.booking.list_open_bookings(db)
    own_bids = crud_bid.bids_for_contractor(db, actor.id, include_resolved=True)
    matches = contractor_match.eligible_bookings(candidates, profile, own_bids)
    return [contractor_match.contractor_view(b) for b in matches]
