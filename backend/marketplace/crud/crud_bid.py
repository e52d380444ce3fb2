"""Bid ledger: the authoritative per-booking bid collection.

Every state change here is a single transaction built from conditional
``UPDATE`` statements whose ``WHERE`` clause re-checks the state the caller
saw. A zero row count means someone else got there first, which is how
"first accept wins" holds without any process-level locking.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models
from ..core.config import settings
from ..core.observability import ledger_span
from ..models import Bid, BidStatus, Booking, BookingStatus, BookingTier
from ..models.bid import LIVE_BID_STATUSES
from ..models.booking_status import TERMINAL_STATUSES
from ..realtime import bus
from ..services import bid_timer
from ..services.booking_stage import on_bid_accepted
from ..utils.clock import utcnow
from ..utils.errors import (
    AlreadyResolved,
    BidExpired,
    BookingClosed,
    DuplicateBid,
    InvalidAmount,
    InvalidEta,
    InvalidMaterials,
    NotAuthorized,
    NotFound,
    Terminal,
)

logger = logging.getLogger(__name__)

REJECTED_BY_ACCEPT = "another_bid_accepted"


def get_bid(db: Session, bid_id: int) -> Optional[Bid]:
    return db.query(models.Bid).filter(models.Bid.id == bid_id).first()


def _get_booking(db: Session, booking_id: int) -> Booking:
    booking = db.query(models.Booking).filter(models.Booking.id == booking_id).first()
    if booking is None:
        raise NotFound(f"Booking {booking_id} not found", {"booking_id": "not_found"})
    return booking


def _get_booking_bid(db: Session, booking_id: int, bid_id: int) -> Tuple[Booking, Bid]:
    booking = _get_booking(db, booking_id)
    bid = get_bid(db, bid_id)
    if bid is None or bid.booking_id != booking.id:
        raise NotFound(
            f"Bid {bid_id} not found on booking {booking_id}", {"bid_id": "not_found"}
        )
    return booking, bid


def _clean_amount(amount: Any) -> Decimal:
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount("Amount must be a number", {"amount": "invalid"})
    if not value.is_finite() or value <= 0:
        raise InvalidAmount("Amount must be greater than zero", {"amount": "must_be_positive"})
    return value.quantize(Decimal("0.01"))


def _clean_eta(eta_minutes: Any) -> int:
    lo, hi = settings.BID_MIN_ETA_MINUTES, settings.BID_MAX_ETA_MINUTES
    if isinstance(eta_minutes, bool) or not isinstance(eta_minutes, int):
        raise InvalidEta("ETA must be a whole number of minutes", {"eta_minutes": "invalid"})
    if eta_minutes < lo or eta_minutes > hi:
        raise InvalidEta(
            f"ETA must be between {lo} and {hi} minutes",
            {"eta_minutes": "out_of_range"},
        )
    return eta_minutes


def _clean_materials(materials: Optional[Iterable[Any]]) -> List[Dict[str, str]]:
    cleaned: List[Dict[str, str]] = []
    for idx, item in enumerate(materials or []):
        if isinstance(item, dict):
            name, cost = item.get("name"), item.get("cost")
        else:
            name, cost = getattr(item, "name", None), getattr(item, "cost", None)
        name = (name or "").strip()
        if not name:
            raise InvalidMaterials(
                "Each material needs a name", {f"materials.{idx}.name": "required"}
            )
        try:
            cost_value = Decimal(str(cost))
        except (InvalidOperation, ValueError, TypeError):
            cost_value = Decimal("0")
        if not cost_value.is_finite() or cost_value <= 0:
            raise InvalidMaterials(
                "Material costs must be greater than zero",
                {f"materials.{idx}.cost": "must_be_positive"},
            )
        cleaned.append({"name": name, "cost": str(cost_value)})
    return cleaned


def _resolve_failed_bid_claim(db: Session, bid_id: int, now: datetime) -> None:
    """Explain why the conditional bid update matched nothing."""
    row = db.execute(select(Bid.status, Bid.expires_at).where(Bid.id == bid_id)).one()
    status, expires_at = BidStatus(row.status), row.expires_at
    if status == BidStatus.EXPIRED or (status == BidStatus.PENDING and now >= expires_at):
        raise BidExpired(f"Bid {bid_id} has expired", {"bid_id": "expired"})
    raise AlreadyResolved(f"Bid {bid_id} is already {status.value}", {"bid_id": status.value})


def _accept_in_transaction(db: Session, booking: Booking, bid: Bid, now: datetime) -> List[int]:
    """Accept ``bid`` inside the caller's open transaction.

    Claims the booking row first, then the bid, then rejects every other
    pending bid on the booking. Returns the ids of the rejected siblings.
    The caller commits on success and rolls back on any raised error.
    """
    values = on_bid_accepted(booking, bid, now)
    values["version"] = Booking.version + 1
    claimed = db.execute(
        update(Booking)
        .where(
            Booking.id == booking.id,
            Booking.accepted_bid_id.is_(None),
            Booking.status == BookingStatus.AWAITING_BIDS,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        raise AlreadyResolved(
            f"Booking {booking.id} already has an accepted bid",
            {"booking_id": "already_resolved"},
        )

    accepted = db.execute(
        update(Bid)
        .where(
            Bid.id == bid.id,
            Bid.booking_id == booking.id,
            Bid.status == BidStatus.PENDING,
            Bid.expires_at > now,
        )
        .values(
            status=BidStatus.ACCEPTED,
            resolved_at=now,
            updated_at=now,
            version=Bid.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if accepted.rowcount != 1:
        _resolve_failed_bid_claim(db, bid.id, now)

    sibling_ids = list(
        db.execute(
            select(Bid.id).where(
                Bid.booking_id == booking.id,
                Bid.status == BidStatus.PENDING,
                Bid.id != bid.id,
            )
        ).scalars()
    )
    if sibling_ids:
        db.execute(
            update(Bid)
            .where(Bid.id.in_(sibling_ids), Bid.status == BidStatus.PENDING)
            .values(
                status=BidStatus.REJECTED,
                rejection_reason=REJECTED_BY_ACCEPT,
                resolved_at=now,
                updated_at=now,
                version=Bid.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
    return sibling_ids


def _fanout_accept(booking: Booking, bid: Bid, rejected: Iterable[Bid]) -> None:
    bus.fanout_booking(booking)
    bus.fanout_bids([bid, *rejected])


def submit_bid(
    db: Session,
    booking_id: int,
    contractor_id: int,
    amount: Any,
    eta_minutes: Any,
    note: Optional[str] = None,
    materials: Optional[Iterable[Any]] = None,
    now: Optional[datetime] = None,
) -> Bid:
    """Record a contractor's bid.

    On a ``priority`` booking the bid is accepted in the same transaction,
    so the contractor either wins the job or gets ``BookingClosed``.
    """
    now = now or utcnow()
    clean_amount = _clean_amount(amount)
    clean_eta = _clean_eta(eta_minutes)
    clean_materials = _clean_materials(materials)

    booking = _get_booking(db, booking_id)
    if booking.status != BookingStatus.AWAITING_BIDS or booking.accepted_bid_id is not None:
        logger.info(
            "Bid from contractor %s refused: booking %s is %s",
            contractor_id,
            booking_id,
            booking.status.value,
        )
        raise BookingClosed(
            "This job is no longer accepting bids", {"booking_id": "closed"}
        )

    live = (
        db.query(models.Bid)
        .filter(
            models.Bid.booking_id == booking.id,
            models.Bid.contractor_id == contractor_id,
            models.Bid.status.in_(LIVE_BID_STATUSES),
        )
        .all()
    )
    for existing in live:
        if existing.status == BidStatus.ACCEPTED or not bid_timer.is_expired(existing, now):
            raise DuplicateBid(
                "You already have an active bid on this job",
                {"booking_id": "duplicate_bid"},
            )
    if live:
        # Lapsed but not yet swept; expire it now so the new bid can take its slot
        _expire_ids(db, [b.id for b in live], now)

    bid = models.Bid(
        booking_id=booking.id,
        contractor_id=contractor_id,
        amount=clean_amount,
        eta_minutes=clean_eta,
        note=note,
        materials=clean_materials,
        status=BidStatus.PENDING,
        expires_at=now + bid_timer.expiry_window(booking.tier),
        created_at=now,
        updated_at=now,
    )
    db.add(bid)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise DuplicateBid(
            "You already have an active bid on this job",
            {"booking_id": "duplicate_bid"},
        )

    rejected_ids: List[int] = []
    auto_accept = BookingTier(booking.tier) == BookingTier.PRIORITY
    if auto_accept:
        try:
            rejected_ids = _accept_in_transaction(db, booking, bid, now)
        except (AlreadyResolved, BidExpired):
            db.rollback()
            logger.info(
                "Priority bid from contractor %s lost booking %s to a concurrent accept",
                contractor_id,
                booking_id,
            )
            raise BookingClosed(
                "This job was just assigned to another contractor",
                {"booking_id": "closed"},
            )

    db.commit()
    db.refresh(bid)
    db.refresh(booking)
    logger.info(
        "Bid %s submitted on booking %s by contractor %s (amount=%s eta=%s auto_accept=%s)",
        bid.id,
        booking.id,
        contractor_id,
        clean_amount,
        clean_eta,
        auto_accept,
    )

    if auto_accept:
        rejected = _load_bids(db, rejected_ids)
        bus.fanout_bids([bid], op="insert")
        _fanout_accept(booking, bid, rejected)
    else:
        bus.fanout_bids([bid], op="insert")
    return bid


def accept_bid(
    db: Session,
    booking_id: int,
    bid_id: int,
    acting_customer_id: int,
    now: Optional[datetime] = None,
) -> Tuple[Booking, Bid]:
    """Accept one bid and reject every other pending bid, atomically."""
    now = now or utcnow()
    booking, bid = _get_booking_bid(db, booking_id, bid_id)

    if booking.customer_id != acting_customer_id:
        logger.warning(
            "Customer %s tried to accept bid %s on booking %s they do not own",
            acting_customer_id,
            bid_id,
            booking_id,
        )
        raise NotAuthorized("Only the customer who posted this job can accept bids", {"booking_id": "not_owner"})
    if booking.status in TERMINAL_STATUSES:
        raise Terminal(f"Booking {booking.id} is {booking.status.value}", {"status": booking.status.value})
    if booking.accepted_bid_id is not None or booking.status != BookingStatus.AWAITING_BIDS:
        raise AlreadyResolved(
            f"Booking {booking.id} already has an accepted bid",
            {"booking_id": "already_resolved"},
        )
    if bid.status == BidStatus.EXPIRED or (
        bid.status == BidStatus.PENDING and bid_timer.is_expired(bid, now)
    ):
        raise BidExpired(f"Bid {bid.id} has expired", {"bid_id": "expired"})
    if bid.status != BidStatus.PENDING:
        raise AlreadyResolved(f"Bid {bid.id} is already {bid.status.value}", {"bid_id": bid.status.value})

    with ledger_span("bid.accept", booking_id=booking.id, bid_id=bid.id):
        try:
            rejected_ids = _accept_in_transaction(db, booking, bid, now)
        except (AlreadyResolved, BidExpired) as exc:
            db.rollback()
            logger.info("Accept of bid %s on booking %s lost: %s", bid_id, booking_id, exc.message)
            raise
        db.commit()
    db.refresh(booking)
    db.refresh(bid)
    logger.info(
        "Bid %s accepted on booking %s; contractor %s assigned, %d other bid(s) rejected",
        bid.id,
        booking.id,
        bid.contractor_id,
        len(rejected_ids),
    )
    _fanout_accept(booking, bid, _load_bids(db, rejected_ids))
    return booking, bid


def reject_bid(
    db: Session,
    booking_id: int,
    bid_id: int,
    acting_customer_id: int,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Bid:
    now = now or utcnow()
    booking, bid = _get_booking_bid(db, booking_id, bid_id)

    if booking.customer_id != acting_customer_id:
        raise NotAuthorized("Only the customer who posted this job can reject bids", {"booking_id": "not_owner"})
    if booking.status in TERMINAL_STATUSES:
        raise Terminal(f"Booking {booking.id} is {booking.status.value}", {"status": booking.status.value})
    if bid.status == BidStatus.EXPIRED or (
        bid.status == BidStatus.PENDING and bid_timer.is_expired(bid, now)
    ):
        raise BidExpired(f"Bid {bid.id} has expired", {"bid_id": "expired"})
    if bid.status != BidStatus.PENDING:
        raise AlreadyResolved(f"Bid {bid.id} is already {bid.status.value}", {"bid_id": bid.status.value})

    res = db.execute(
        update(Bid)
        .where(Bid.id == bid.id, Bid.status == BidStatus.PENDING, Bid.expires_at > now)
        .values(
            status=BidStatus.REJECTED,
            rejection_reason=reason,
            resolved_at=now,
            updated_at=now,
            version=Bid.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.rollback()
        _resolve_failed_bid_claim(db, bid.id, now)
    db.commit()
    db.refresh(bid)
    logger.info("Bid %s on booking %s rejected (%s)", bid.id, booking.id, reason or "no reason")
    bus.fanout_bids([bid])
    return bid


def _expire_ids(db: Session, bid_ids: Iterable[int], now: datetime) -> List[int]:
    won: List[int] = []
    for bid_id in bid_ids:
        res = db.execute(
            update(Bid)
            .where(Bid.id == bid_id, Bid.status == BidStatus.PENDING, Bid.expires_at <= now)
            .values(
                status=BidStatus.EXPIRED,
                resolved_at=now,
                updated_at=now,
                version=Bid.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            won.append(bid_id)
    return won


def expire_stale_bids(db: Session, now: Optional[datetime] = None) -> List[Bid]:
    """Move every lapsed pending bid to ``expired``.

    Each row flips through its own compare-and-set, so overlapping sweeps
    never report the same bid twice.
    """
    now = now or utcnow()
    candidates = list(
        db.execute(
            select(Bid.id).where(Bid.status == BidStatus.PENDING, Bid.expires_at <= now)
        ).scalars()
    )
    if not candidates:
        return []
    with ledger_span("bid.expire_sweep", candidates=len(candidates)):
        expired_ids = _expire_ids(db, candidates, now)
        db.commit()
    expired = _load_bids(db, expired_ids)
    if expired:
        logger.info("Expired %d stale bid(s): %s", len(expired), expired_ids)
    bus.fanout_bids(expired)
    return expired


def active_bids_for(db: Session, booking_id: int, now: Optional[datetime] = None) -> List[Bid]:
    """Pending, unexpired bids on a booking, cheapest first."""
    now = now or utcnow()
    _get_booking(db, booking_id)
    return (
        db.query(models.Bid)
        .filter(
            models.Bid.booking_id == booking_id,
            models.Bid.status == BidStatus.PENDING,
            models.Bid.expires_at > now,
        )
        .order_by(models.Bid.amount.asc(), models.Bid.created_at.asc(), models.Bid.id.asc())
        .all()
    )


def bids_for_contractor(
    db: Session, contractor_id: int, include_resolved: bool = False
) -> List[Bid]:
    query = db.query(models.Bid).filter(models.Bid.contractor_id == contractor_id)
    if not include_resolved:
        query = query.filter(models.Bid.status.in_(LIVE_BID_STATUSES))
    return query.order_by(models.Bid.created_at.desc(), models.Bid.id.desc()).all()


def _load_bids(db: Session, bid_ids: Iterable[int]) -> List[Bid]:
    ids = list(bid_ids)
    if not ids:
        return []
    return db.query(models.Bid).filter(models.Bid.id.in_(ids)).order_by(models.Bid.id).all()
