from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from marketplace.crud import crud_bid
from marketplace.models import Bid, BidStatus, Booking, BookingStatus, DisplayStage, PaymentState
from marketplace.models.base import BaseModel
from marketplace.schemas.actor import Actor, Role, SYSTEM_ACTOR
from marketplace.services import booking_stage
from marketplace.services.payments import HttpPaymentGateway, PaymentGatewayError
from marketplace.utils.errors import (
    AlreadyResolved,
    IllegalTransition,
    NotAuthorized,
    PaymentFailed,
    Terminal,
)

NOW = datetime(2030, 1, 1, 12, 0, 0)
CUSTOMER = Actor(id=10, role=Role.CUSTOMER)
CONTRACTOR = Actor(id=21, role=Role.CONTRACTOR)
OTHER_CONTRACTOR = Actor(id=22, role=Role.CONTRACTOR)
ADMIN = Actor(id=1, role=Role.ADMIN)


class StubGateway:
    def __init__(self, ok=True, error=None):
        self.ok = ok
        self.error = error
        self.calls = []
        self.amounts = []

    def mark_paid(self, booking_id, amount=None):
        self.calls.append(booking_id)
        self.amounts.append(amount)
        if self.error is not None:
            raise self.error
        return self.ok


def setup_db():
    engine = create_engine(
        "sqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    BaseModel.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)
    return Session()


def assigned_booking(db, status=BookingStatus.CONTRACTOR_ASSIGNED):
    booking = Booking(customer_id=CUSTOMER.id, service_type="roofing", asap=True)
    db.add(booking)
    db.commit()
    bid = crud_bid.submit_bid(db, booking.id, CONTRACTOR.id, 300, 60, now=NOW)
    crud_bid.accept_bid(db, booking.id, bid.id, CUSTOMER.id, now=NOW)
    if status != BookingStatus.CONTRACTOR_ASSIGNED:
        booking.status = status
        db.commit()
    db.refresh(booking)
    return booking


def test_contractor_walks_the_fulfilment_path():
    db = setup_db()
    booking = assigned_booking(db)
    assert booking.stage == DisplayStage.ASSIGNED
    version = booking.version

    for target, stage in (
        (BookingStatus.CONTRACTOR_ARRIVING, DisplayStage.ARRIVING),
        (BookingStatus.WORK_IN_PROGRESS, DisplayStage.IN_PROGRESS),
        (BookingStatus.WORK_COMPLETED, DisplayStage.AWAITING_PAYMENT),
    ):
        booking = booking_stage.advance(db, booking.id, target, CONTRACTOR, now=NOW)
        assert booking.status == target
        assert booking.stage == stage
        assert booking.current_stage == stage
        assert booking.version == version + 1
        version = booking.version


def test_skipping_a_stage_is_illegal():
    db = setup_db()
    booking = assigned_booking(db)
    with pytest.raises(IllegalTransition):
        booking_stage.advance(db, booking.id, BookingStatus.WORK_COMPLETED, CONTRACTOR)
    with pytest.raises(IllegalTransition):
        booking_stage.advance(db, booking.id, BookingStatus.AWAITING_BIDS, CONTRACTOR)


def test_assignment_only_through_bid_acceptance():
    db = setup_db()
    booking = Booking(customer_id=CUSTOMER.id, service_type="roofing", asap=True)
    db.add(booking)
    db.commit()
    with pytest.raises(IllegalTransition):
        booking_stage.advance(db, booking.id, BookingStatus.CONTRACTOR_ASSIGNED, CUSTOMER)


def test_only_assigned_contractor_advances_work():
    db = setup_db()
    booking = assigned_booking(db)
    with pytest.raises(NotAuthorized):
        booking_stage.advance(db, booking.id, BookingStatus.CONTRACTOR_ARRIVING, OTHER_CONTRACTOR)
    with pytest.raises(NotAuthorized):
        booking_stage.advance(db, booking.id, BookingStatus.CONTRACTOR_ARRIVING, CUSTOMER)
    db.refresh(booking)
    assert booking.status == BookingStatus.CONTRACTOR_ASSIGNED


def test_only_customer_or_system_marks_paid():
    db = setup_db()
    booking = assigned_booking(db, status=BookingStatus.WORK_COMPLETED)
    with pytest.raises(NotAuthorized):
        booking_stage.advance(db, booking.id, BookingStatus.PAID, CONTRACTOR)
    paid = booking_stage.advance(db, booking.id, BookingStatus.PAID, SYSTEM_ACTOR)
    assert paid.status == BookingStatus.PAID
    assert paid.payment_state == PaymentState.PAID


def test_scenario_e_payment_moves_to_paid():
    db = setup_db()
    booking = assigned_booking(db, status=BookingStatus.WORK_COMPLETED)
    gateway = StubGateway()
    paid = booking_stage.mark_paid(db, booking.id, CUSTOMER, gateway, now=NOW)
    assert gateway.calls == [booking.id]
    assert gateway.amounts == [Decimal("300.00")]
    assert paid.status == BookingStatus.PAID
    assert paid.payment_state == PaymentState.PAID
    assert paid.stage == DisplayStage.PAYMENT_COMPLETED
    assert paid.current_stage == DisplayStage.PAYMENT_COMPLETED


def test_paid_payment_state_wins_while_status_lags():
    booking = Booking(
        customer_id=1,
        service_type="roofing",
        status=BookingStatus.WORK_COMPLETED,
        payment_state=PaymentState.UNPAID,
    )
    assert booking.stage == DisplayStage.AWAITING_PAYMENT
    booking.payment_state = PaymentState.PAID
    assert booking.stage == DisplayStage.PAYMENT_COMPLETED
    assert booking.current_stage == DisplayStage.PAYMENT_COMPLETED
    assert booking_stage.reconcile_display_stage(booking) == DisplayStage.PAYMENT_COMPLETED


def test_payment_failure_leaves_booking_unpaid():
    db = setup_db()
    booking = assigned_booking(db, status=BookingStatus.WORK_COMPLETED)
    with pytest.raises(PaymentFailed):
        booking_stage.mark_paid(db, booking.id, CUSTOMER, StubGateway(error=PaymentGatewayError("down")))
    with pytest.raises(PaymentFailed) as exc:
        booking_stage.mark_paid(db, booking.id, CUSTOMER, StubGateway(ok=False))
    assert exc.value.field_errors == {"payment": "declined"}
    db.refresh(booking)
    assert booking.status == BookingStatus.WORK_COMPLETED
    assert booking.payment_state == PaymentState.UNPAID


def test_mark_paid_before_completion_is_illegal():
    db = setup_db()
    booking = assigned_booking(db, status=BookingStatus.WORK_IN_PROGRESS)
    gateway = StubGateway()
    with pytest.raises(IllegalTransition):
        booking_stage.mark_paid(db, booking.id, CUSTOMER, gateway)
    assert gateway.calls == []


def test_terminal_bookings_refuse_every_transition():
    db = setup_db()
    booking = assigned_booking(db, status=BookingStatus.WORK_COMPLETED)
    booking_stage.mark_paid(db, booking.id, CUSTOMER, StubGateway())
    for target in BookingStatus:
        with pytest.raises(Terminal):
            booking_stage.advance(db, booking.id, target, ADMIN)

    cancelled = Booking(customer_id=CUSTOMER.id, service_type="roofing", asap=True)
    db.add(cancelled)
    db.commit()
    booking_stage.cancel(db, cancelled.id, CUSTOMER, reason="changed my mind")
    with pytest.raises(Terminal):
        booking_stage.cancel(db, cancelled.id, CUSTOMER)


def test_cancel_while_awaiting_bids_rejects_pending_bids():
    db = setup_db()
    booking = Booking(customer_id=CUSTOMER.id, service_type="roofing", asap=True)
    db.add(booking)
    db.commit()
    b1 = crud_bid.submit_bid(db, booking.id, 21, 100, 60, now=NOW)
    b2 = crud_bid.submit_bid(db, booking.id, 22, 120, 60, now=NOW)

    with pytest.raises(NotAuthorized):
        booking_stage.cancel(db, booking.id, CONTRACTOR)

    cancelled = booking_stage.cancel(db, booking.id, CUSTOMER, reason="found someone", now=NOW)
    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.stage == DisplayStage.CANCELLED
    assert cancelled.cancel_reason == "found someone"
    for bid in (b1, b2):
        db.refresh(bid)
        assert bid.status == BidStatus.REJECTED
        assert bid.rejection_reason == "booking_cancelled"


def test_participants_cannot_cancel_after_assignment():
    db = setup_db()
    booking = assigned_booking(db)
    with pytest.raises(IllegalTransition):
        booking_stage.cancel(db, booking.id, CONTRACTOR, reason="sick")
    with pytest.raises(IllegalTransition):
        booking_stage.cancel(db, booking.id, OTHER_CONTRACTOR)

    in_progress = assigned_booking(db, status=BookingStatus.WORK_IN_PROGRESS)
    with pytest.raises(IllegalTransition) as exc:
        booking_stage.cancel(db, in_progress.id, CUSTOMER, reason="too slow")
    assert exc.value.field_errors == {"target": "cancelled", "status": "work_in_progress"}
    for b in (booking, in_progress):
        db.refresh(b)
        assert b.status != BookingStatus.CANCELLED
        assert b.cancel_reason is None


def test_admin_may_cancel_after_assignment():
    db = setup_db()
    booking = assigned_booking(db, status=BookingStatus.WORK_IN_PROGRESS)
    cancelled = booking_stage.cancel(db, booking.id, ADMIN, reason="dispute", now=NOW)
    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.cancel_reason == "dispute"


def test_stale_version_is_already_resolved():
    db = setup_db()
    booking = assigned_booking(db)
    stale = Booking(
        id=booking.id,
        customer_id=booking.customer_id,
        contractor_id=booking.contractor_id,
        service_type=booking.service_type,
        status=booking.status,
        payment_state=booking.payment_state,
        version=booking.version - 1,
    )
    with pytest.raises(AlreadyResolved):
        booking_stage._transition(db, stale, BookingStatus.CONTRACTOR_ARRIVING, NOW)


def test_on_bid_accepted_values():
    booking = Booking(customer_id=1, service_type="roofing")
    bid = Bid(id=7, booking_id=3, contractor_id=21, amount=10, eta_minutes=30, expires_at=NOW)
    values = booking_stage.on_bid_accepted(booking, bid, NOW)
    assert values["status"] == BookingStatus.CONTRACTOR_ASSIGNED
    assert values["contractor_id"] == 21
    assert values["accepted_bid_id"] == 7
    assert values["current_stage"] == DisplayStage.ASSIGNED
    assert values["status_changed_at"] == NOW


def test_http_gateway_posts_to_mark_paid():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = request.content
        return httpx.Response(200, json={"ok": True})

    gateway = HttpPaymentGateway(base_url="https://pay.test/", transport=httpx.MockTransport(handler))
    assert gateway.mark_paid(42) is True
    assert seen["url"] == "https://pay.test/payments/mark-paid"
    assert b"42" in seen["body"]
    assert b"amount" not in seen["body"]

    assert gateway.mark_paid(7, amount=Decimal("312.50")) is True
    assert b"\"amount\":\"312.50\"" in seen["body"].replace(b" ", b"")


def test_http_gateway_wraps_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "maintenance"})

    gateway = HttpPaymentGateway(base_url="https://pay.test", transport=httpx.MockTransport(handler))
    with pytest.raises(PaymentGatewayError):
        gateway.mark_paid(1)
