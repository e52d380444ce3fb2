from datetime import datetime, timedelta

import pytest

from marketplace.core.config import settings
from marketplace.models import Bid, BookingTier
from marketplace.services import bid_timer

NOW = datetime(2030, 1, 1, 12, 0, 0)


def make_bid(expires_at=None, created_at=None):
    return Bid(
        booking_id=1,
        contractor_id=2,
        amount=100,
        eta_minutes=60,
        expires_at=expires_at,
        created_at=created_at,
    )


def test_remaining_counts_down_to_expiry():
    bid = make_bid(expires_at=NOW + timedelta(minutes=10))
    assert bid_timer.remaining(bid, NOW) == timedelta(minutes=10)
    assert not bid_timer.is_expired(bid, NOW)


def test_expiry_instant_is_already_expired():
    bid = make_bid(expires_at=NOW)
    assert bid_timer.is_expired(bid, NOW)
    assert bid_timer.remaining(bid, NOW) is bid_timer.EXPIRED
    assert not bid_timer.is_expired(bid, NOW - timedelta(microseconds=1))


def test_missing_expiry_falls_back_to_creation_plus_window():
    bid = make_bid(created_at=NOW)
    assert bid_timer.effective_expiry(bid) == NOW + timedelta(minutes=30)
    assert bid_timer.is_expired(bid, NOW + timedelta(minutes=30))


def test_missing_both_timestamps_raises():
    with pytest.raises(ValueError):
        bid_timer.effective_expiry(make_bid())


def test_priority_window_override(monkeypatch):
    assert bid_timer.expiry_window(BookingTier.PRIORITY) == timedelta(minutes=30)
    monkeypatch.setattr(settings, "PRIORITY_BID_EXPIRY_MINUTES", 10)
    assert bid_timer.expiry_window(BookingTier.PRIORITY) == timedelta(minutes=10)
    assert bid_timer.expiry_window(BookingTier.STANDARD) == timedelta(minutes=30)


def test_near_expiry_is_advisory():
    bid = make_bid(expires_at=NOW + timedelta(minutes=4))
    assert bid_timer.is_near_expiry(bid, NOW)
    assert not bid_timer.is_near_expiry(bid, NOW, threshold=timedelta(minutes=2))
    assert not bid_timer.is_near_expiry(bid, NOW + timedelta(minutes=5))


def test_countdown_label_and_urgency():
    bid = make_bid(expires_at=NOW + timedelta(minutes=29, seconds=5))
    assert bid_timer.format_countdown(bid, NOW) == "29:05"
    assert bid_timer.urgency_level(bid, NOW) == "normal"
    assert bid_timer.urgency_level(bid, NOW + timedelta(minutes=26)) == "warning"
    assert bid_timer.format_countdown(bid, NOW + timedelta(minutes=28, seconds=10)) == "0:55"
    assert bid_timer.urgency_level(bid, NOW + timedelta(minutes=28, seconds=10)) == "critical"
    assert bid_timer.format_countdown(bid, NOW + timedelta(hours=1)) == "Expired"
    assert bid_timer.urgency_level(bid, NOW + timedelta(hours=1)) == "expired"
    assert bid_timer.seconds_remaining(bid, NOW + timedelta(hours=1)) == 0
