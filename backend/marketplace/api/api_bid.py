from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import logging

from .. import crud, models, schemas
from ..crud import crud_bid
from ..schemas.actor import Actor
from ..services import bid_timer
from ..utils import error_response, utcnow
from ..utils.errors import MarketplaceError
from .dependencies import get_current_contractor, get_current_customer, get_db

router = APIRouter(tags=["bids"])
logger = logging.getLogger(__name__)


def _db_error(booking_id: int, action: str):
    logger.exception("Database error during bid %s on booking %s", action, booking_id)
    return error_response(
        "Internal Server Error",
        {"booking_id": "db_error"},
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def _active_bid_payload(bid: models.Bid, now) -> schemas.ActiveBidRead:
    base = schemas.BidRead.model_validate(bid).model_dump()
    return schemas.ActiveBidRead(
        **base,
        seconds_remaining=bid_timer.seconds_remaining(bid, now),
        countdown=bid_timer.format_countdown(bid, now),
        urgency_level=bid_timer.urgency_level(bid, now),
    )


@router.post(
    "/bookings/{booking_id}/bids",
    response_model=schemas.BidRead,
    status_code=status.HTTP_201_CREATED,
)
def submit_bid(
    booking_id: int,
    bid_in: schemas.BidCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_contractor),
):
    try:
        bid = crud_bid.submit_bid(
            db,
            booking_id,
            actor.id,
            bid_in.amount,
            bid_in.eta_minutes,
            note=bid_in.note,
            materials=bid_in.materials,
        )
    except MarketplaceError as exc:
        raise exc.to_http()
    except SQLAlchemyError:
        raise _db_error(booking_id, "submit")
    return schemas.BidRead.model_validate(bid)


@router.get("/bookings/{booking_id}/bids", response_model=List[schemas.ActiveBidRead])
def list_active_bids(
    booking_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_customer),
):
    """Bids the customer can still accept, cheapest first, with countdowns."""
    booking = crud.booking.get_booking(db, booking_id)
    if booking is None:
        raise error_response("Booking not found", {"booking_id": "not_found"}, status.HTTP_404_NOT_FOUND)
    if booking.customer_id != actor.id:
        raise error_response(
            "Only the customer who posted this job can see its bids",
            {"booking_id": "not_owner"},
            status.HTTP_403_FORBIDDEN,
        )
    now = utcnow()
    bids = crud_bid.active_bids_for(db, booking_id, now=now)
    return [_active_bid_payload(b, now) for b in bids]


@router.post(
    "/bookings/{booking_id}/bids/{bid_id}/accept",
    response_model=schemas.AcceptBidResponse,
)
def accept_bid(
    booking_id: int,
    bid_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_customer),
):
    try:
        booking, bid = crud_bid.accept_bid(db, booking_id, bid_id, actor.id)
    except MarketplaceError as exc:
        raise exc.to_http()
    except SQLAlchemyError:
        raise _db_error(booking_id, "accept")
    return schemas.AcceptBidResponse(
        booking_id=booking.id,
        booking_status=booking.status.value,
        contractor_id=booking.contractor_id,
        bid=schemas.BidRead.model_validate(bid),
    )


@router.post("/bookings/{booking_id}/bids/{bid_id}/reject", response_model=schemas.BidRead)
def reject_bid(
    booking_id: int,
    bid_id: int,
    body: schemas.BidReject,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_customer),
):
    try:
        bid = crud_bid.reject_bid(db, booking_id, bid_id, actor.id, body.reason)
    except MarketplaceError as exc:
        raise exc.to_http()
    except SQLAlchemyError:
        raise _db_error(booking_id, "reject")
    return schemas.BidRead.model_validate(bid)


@router.get("/contractors/me/bids", response_model=List[schemas.BidRead])
def my_bids(
    include_resolved: bool = False,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_contractor),
):
    bids = crud_bid.bids_for_contractor(db, actor.id, include_resolved=include_resolved)
    return [schemas.BidRead.model_validate(b) for b in bids]
