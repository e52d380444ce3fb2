import logging

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

from marketplace.models import Bid, BidStatus, Booking, BookingStatus, DisplayStage, PaymentState
from marketplace.models.base import BaseModel
from marketplace.utils.status_logger import register_status_listeners


def setup_db():
    engine = create_engine('sqlite:///:memory:', connect_args={'check_same_thread': False})
    BaseModel.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)
    return Session()


def test_booking_status_round_trip():
    db = setup_db()
    for status in BookingStatus:
        booking = Booking(customer_id=1, service_type='plumbing', asap=True, status=status)
        db.add(booking)
        db.commit()
        fetched = db.get(Booking, booking.id)
        assert fetched.status == status
        db.delete(fetched)
        db.commit()


def test_legacy_spellings_read_back_canonical():
    db = setup_db()
    booking = Booking(customer_id=1, service_type='plumbing', asap=True)
    db.add(booking)
    db.commit()
    for legacy, canonical in (
        ('in_progress', BookingStatus.WORK_IN_PROGRESS),
        ('Pending_Bids', BookingStatus.AWAITING_BIDS),
        ('payment_completed', BookingStatus.PAID),
    ):
        db.execute(text('UPDATE bookings SET status = :s WHERE id = :id'), {'s': legacy, 'id': booking.id})
        db.commit()
        db.expire_all()
        assert db.get(Booking, booking.id).status == canonical


def test_stage_column_tracks_status():
    db = setup_db()
    booking = Booking(customer_id=1, service_type='plumbing', asap=True)
    db.add(booking)
    db.commit()
    booking.status = BookingStatus.WORK_COMPLETED
    assert booking.current_stage == DisplayStage.AWAITING_PAYMENT
    booking.payment_state = PaymentState.PAID
    assert booking.current_stage == DisplayStage.PAYMENT_COMPLETED
    assert booking.stage == DisplayStage.PAYMENT_COMPLETED


def test_status_changes_are_logged(caplog):
    register_status_listeners()
    caplog.set_level(logging.INFO, logger='marketplace.utils.status_logger')
    db = setup_db()
    booking = Booking(customer_id=1, service_type='plumbing', asap=True)
    db.add(booking)
    db.commit()
    db.refresh(booking)
    booking.status = BookingStatus.CANCELLED
    messages = [r.getMessage() for r in caplog.records]
    assert f'Booking id={booking.id} status changed from awaiting_bids to cancelled' in messages

    bid = Bid(booking_id=booking.id, contractor_id=2, amount=100, eta_minutes=60, expires_at=booking.created_at)
    db.add(bid)
    db.commit()
    db.refresh(bid)
    bid.status = BidStatus.EXPIRED
    assert any(f'Bid id={bid.id} status changed from pending to expired' in r.getMessage() for r in caplog.records)
