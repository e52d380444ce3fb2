from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from marketplace.crud import crud_bid
from marketplace.models import Bid, BidStatus, Booking, BookingStatus, BookingTier
from marketplace.models.base import BaseModel
from marketplace.schemas import MaterialItem
from marketplace.utils.errors import (
    AlreadyResolved,
    BidExpired,
    BookingClosed,
    DuplicateBid,
    InvalidAmount,
    InvalidEta,
    InvalidMaterials,
    NotAuthorized,
    NotFound,
    RaceOutcome,
    Terminal,
)

NOW = datetime(2030, 1, 1, 12, 0, 0)
CUSTOMER = 10


def setup_db():
    engine = create_engine(
        "sqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    BaseModel.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)
    return Session()


def create_booking(db, tier=BookingTier.STANDARD, status=BookingStatus.AWAITING_BIDS):
    booking = Booking(
        customer_id=CUSTOMER,
        service_type="plumbing",
        tier=tier,
        status=status,
        asap=True,
    )
    db.add(booking)
    db.commit()
    db.refresh(booking)
    return booking


def test_scenario_a_standard_bid_stays_pending():
    db = setup_db()
    booking = create_booking(db)
    bid = crud_bid.submit_bid(db, booking.id, 21, 200, 90, now=NOW)
    assert bid.status == BidStatus.PENDING
    assert bid.amount == Decimal("200.00")
    assert bid.expires_at == NOW + timedelta(minutes=30)
    db.refresh(booking)
    assert booking.status == BookingStatus.AWAITING_BIDS


def test_scenario_b_priority_first_bid_is_accepted():
    db = setup_db()
    booking = create_booking(db, tier=BookingTier.PRIORITY)
    bid = crud_bid.submit_bid(db, booking.id, 21, 150, 30, now=NOW)
    assert bid.status == BidStatus.ACCEPTED
    db.refresh(booking)
    assert booking.status == BookingStatus.CONTRACTOR_ASSIGNED
    assert booking.contractor_id == 21
    assert booking.accepted_bid_id == bid.id
    assert booking.status_changed_at == NOW

    with pytest.raises(BookingClosed):
        crud_bid.submit_bid(db, booking.id, 22, 140, 30, now=NOW + timedelta(seconds=5))
    assert db.query(Bid).count() == 1


def test_scenario_c_accept_rejects_siblings():
    db = setup_db()
    booking = create_booking(db)
    b1 = crud_bid.submit_bid(db, booking.id, 21, 150, 60, now=NOW)
    b2 = crud_bid.submit_bid(db, booking.id, 22, 180, 45, now=NOW)

    accepted_booking, accepted = crud_bid.accept_bid(
        db, booking.id, b1.id, CUSTOMER, now=NOW + timedelta(minutes=5)
    )
    assert accepted.status == BidStatus.ACCEPTED
    assert accepted_booking.status == BookingStatus.CONTRACTOR_ASSIGNED
    assert accepted_booking.contractor_id == 21
    db.refresh(b2)
    assert b2.status == BidStatus.REJECTED
    assert b2.rejection_reason == crud_bid.REJECTED_BY_ACCEPT
    assert db.query(Bid).filter(Bid.status == BidStatus.ACCEPTED).count() == 1


def test_scenario_d_expired_bid_cannot_be_accepted():
    db = setup_db()
    booking = create_booking(db)
    bid = crud_bid.submit_bid(db, booking.id, 21, 150, 60, now=NOW - timedelta(minutes=60))

    with pytest.raises(BidExpired) as exc:
        crud_bid.accept_bid(db, booking.id, bid.id, CUSTOMER, now=NOW)
    assert isinstance(exc.value, RaceOutcome)
    db.refresh(booking)
    db.refresh(bid)
    assert booking.status == BookingStatus.AWAITING_BIDS
    assert booking.contractor_id is None
    assert bid.status == BidStatus.PENDING


def test_accept_at_exact_expiry_fails():
    db = setup_db()
    booking = create_booking(db)
    bid = crud_bid.submit_bid(db, booking.id, 21, 150, 60, now=NOW)
    with pytest.raises(BidExpired):
        crud_bid.accept_bid(db, booking.id, bid.id, CUSTOMER, now=bid.expires_at)


def test_second_accept_is_already_resolved():
    db = setup_db()
    booking = create_booking(db)
    b1 = crud_bid.submit_bid(db, booking.id, 21, 150, 60, now=NOW)
    b2 = crud_bid.submit_bid(db, booking.id, 22, 180, 60, now=NOW)
    crud_bid.accept_bid(db, booking.id, b1.id, CUSTOMER, now=NOW)
    with pytest.raises(AlreadyResolved) as exc:
        crud_bid.accept_bid(db, booking.id, b2.id, CUSTOMER, now=NOW)
    assert exc.value.to_http().detail["refresh"] is True


def test_accept_requires_booking_owner():
    db = setup_db()
    booking = create_booking(db)
    bid = crud_bid.submit_bid(db, booking.id, 21, 150, 60, now=NOW)
    with pytest.raises(NotAuthorized) as exc:
        crud_bid.accept_bid(db, booking.id, bid.id, CUSTOMER + 1, now=NOW)
    assert exc.value.to_http().detail["refresh"] is False
    db.refresh(bid)
    assert bid.status == BidStatus.PENDING


def test_accept_on_cancelled_booking_is_terminal():
    db = setup_db()
    booking = create_booking(db)
    bid = crud_bid.submit_bid(db, booking.id, 21, 150, 60, now=NOW)
    booking.status = BookingStatus.CANCELLED
    db.commit()
    with pytest.raises(Terminal):
        crud_bid.accept_bid(db, booking.id, bid.id, CUSTOMER, now=NOW)


def test_accept_unknown_or_foreign_bid_is_not_found():
    db = setup_db()
    first = create_booking(db)
    second = create_booking(db)
    bid = crud_bid.submit_bid(db, first.id, 21, 150, 60, now=NOW)
    with pytest.raises(NotFound):
        crud_bid.accept_bid(db, second.id, bid.id, CUSTOMER, now=NOW)
    with pytest.raises(NotFound):
        crud_bid.accept_bid(db, first.id, 999, CUSTOMER, now=NOW)


@pytest.mark.parametrize("amount", [0, -5, "abc"])
def test_invalid_amount(amount):
    db = setup_db()
    booking = create_booking(db)
    with pytest.raises(InvalidAmount):
        crud_bid.submit_bid(db, booking.id, 21, amount, 60, now=NOW)


@pytest.mark.parametrize("eta", [14, 481, "60"])
def test_invalid_eta(eta):
    db = setup_db()
    booking = create_booking(db)
    with pytest.raises(InvalidEta) as exc:
        crud_bid.submit_bid(db, booking.id, 21, 100, eta, now=NOW)
    assert "eta_minutes" in exc.value.field_errors


def test_eta_bounds_are_inclusive():
    db = setup_db()
    booking = create_booking(db)
    assert crud_bid.submit_bid(db, booking.id, 21, 100, 15, now=NOW).eta_minutes == 15
    assert crud_bid.submit_bid(db, booking.id, 22, 100, 480, now=NOW).eta_minutes == 480


def test_materials_are_validated_and_stored():
    db = setup_db()
    booking = create_booking(db)
    with pytest.raises(InvalidMaterials):
        crud_bid.submit_bid(
            db, booking.id, 21, 100, 60, materials=[{"name": "", "cost": "5"}], now=NOW
        )
    with pytest.raises(InvalidMaterials):
        crud_bid.submit_bid(
            db, booking.id, 21, 100, 60, materials=[{"name": "Pipe", "cost": "0"}], now=NOW
        )
    bid = crud_bid.submit_bid(
        db,
        booking.id,
        21,
        100,
        60,
        materials=[MaterialItem(name="Pipe", cost=Decimal("12.50")), {"name": "Tape", "cost": 3}],
        now=NOW,
    )
    assert bid.materials == [{"name": "Pipe", "cost": "12.50"}, {"name": "Tape", "cost": "3"}]
    assert bid.materials_total == Decimal("15.50")


def test_duplicate_live_bid_is_refused():
    db = setup_db()
    booking = create_booking(db)
    crud_bid.submit_bid(db, booking.id, 21, 100, 60, now=NOW)
    with pytest.raises(DuplicateBid):
        crud_bid.submit_bid(db, booking.id, 21, 90, 60, now=NOW + timedelta(minutes=1))


def test_rebid_allowed_after_rejection_or_expiry():
    db = setup_db()
    booking = create_booking(db)
    first = crud_bid.submit_bid(db, booking.id, 21, 100, 60, now=NOW)
    crud_bid.reject_bid(db, booking.id, first.id, CUSTOMER, "too pricey", now=NOW)
    second = crud_bid.submit_bid(db, booking.id, 21, 90, 60, now=NOW + timedelta(minutes=1))
    assert second.status == BidStatus.PENDING

    # Lapsed but unswept: the new submission retires it first
    later = second.expires_at + timedelta(seconds=1)
    third = crud_bid.submit_bid(db, booking.id, 21, 85, 60, now=later)
    db.refresh(second)
    assert second.status == BidStatus.EXPIRED
    assert third.status == BidStatus.PENDING


def test_submit_to_unknown_or_closed_booking():
    db = setup_db()
    with pytest.raises(NotFound):
        crud_bid.submit_bid(db, 404, 21, 100, 60, now=NOW)
    closed = create_booking(db, status=BookingStatus.WORK_IN_PROGRESS)
    with pytest.raises(BookingClosed):
        crud_bid.submit_bid(db, closed.id, 21, 100, 60, now=NOW)


def test_reject_touches_only_target_bid():
    db = setup_db()
    booking = create_booking(db)
    b1 = crud_bid.submit_bid(db, booking.id, 21, 100, 60, now=NOW)
    b2 = crud_bid.submit_bid(db, booking.id, 22, 120, 60, now=NOW)
    rejected = crud_bid.reject_bid(db, booking.id, b1.id, CUSTOMER, "no thanks", now=NOW)
    assert rejected.status == BidStatus.REJECTED
    assert rejected.rejection_reason == "no thanks"
    assert rejected.resolved_at == NOW
    db.refresh(b2)
    assert b2.status == BidStatus.PENDING

    with pytest.raises(AlreadyResolved):
        crud_bid.reject_bid(db, booking.id, b1.id, CUSTOMER, "again", now=NOW)
    with pytest.raises(AlreadyResolved):
        crud_bid.accept_bid(db, booking.id, b1.id, CUSTOMER, now=NOW)
    with pytest.raises(NotAuthorized):
        crud_bid.reject_bid(db, booking.id, b2.id, 99, None, now=NOW)


def test_expire_stale_bids_is_idempotent():
    db = setup_db()
    booking = create_booking(db)
    old = crud_bid.submit_bid(db, booking.id, 21, 100, 60, now=NOW - timedelta(minutes=30))
    fresh = crud_bid.submit_bid(db, booking.id, 22, 100, 60, now=NOW)

    first = crud_bid.expire_stale_bids(db, now=NOW)
    assert [b.id for b in first] == [old.id]
    snapshot = {b.id: (b.status, b.version) for b in db.query(Bid).all()}

    assert crud_bid.expire_stale_bids(db, now=NOW) == []
    assert {b.id: (b.status, b.version) for b in db.query(Bid).all()} == snapshot
    db.refresh(fresh)
    assert fresh.status == BidStatus.PENDING


def test_resolved_bids_never_return_to_pending():
    db = setup_db()
    booking = create_booking(db)
    b1 = crud_bid.submit_bid(db, booking.id, 21, 100, 60, now=NOW - timedelta(minutes=45))
    b2 = crud_bid.submit_bid(db, booking.id, 22, 110, 60, now=NOW)
    b3 = crud_bid.submit_bid(db, booking.id, 23, 120, 60, now=NOW)

    crud_bid.expire_stale_bids(db, now=NOW)
    crud_bid.accept_bid(db, booking.id, b2.id, CUSTOMER, now=NOW)
    crud_bid.expire_stale_bids(db, now=NOW + timedelta(hours=2))

    for bid in (b1, b2, b3):
        db.refresh(bid)
    assert [b1.status, b2.status, b3.status] == [
        BidStatus.EXPIRED,
        BidStatus.ACCEPTED,
        BidStatus.REJECTED,
    ]
    assert db.query(Bid).filter(Bid.status == BidStatus.PENDING).count() == 0


def test_active_bids_sorted_by_amount_and_exclude_expired():
    db = setup_db()
    booking = create_booking(db)
    crud_bid.submit_bid(db, booking.id, 21, 180, 60, now=NOW)
    crud_bid.submit_bid(db, booking.id, 22, 150, 60, now=NOW)
    crud_bid.submit_bid(db, booking.id, 23, 120, 60, now=NOW - timedelta(minutes=31))
    active = crud_bid.active_bids_for(db, booking.id, now=NOW)
    assert [b.contractor_id for b in active] == [22, 21]


def test_bids_for_contractor():
    db = setup_db()
    first = create_booking(db)
    second = create_booking(db)
    live = crud_bid.submit_bid(db, first.id, 21, 100, 60, now=NOW)
    gone = crud_bid.submit_bid(db, second.id, 21, 100, 60, now=NOW)
    crud_bid.reject_bid(db, second.id, gone.id, CUSTOMER, None, now=NOW)
    assert [b.id for b in crud_bid.bids_for_contractor(db, 21)] == [live.id]
    assert {b.id for b in crud_bid.bids_for_contractor(db, 21, include_resolved=True)} == {
        live.id,
        gone.id,
    }
    assert crud_bid.get_bid(db, live.id).id == live.id
