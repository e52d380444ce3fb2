"""Remaining-time computation for bids.

Everything here is a pure function of the bid and the ``now`` passed in. The
caller drives re-evaluation (the HTTP layer on each read, a UI once per
second); nothing in this module schedules work.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Union

from ..core.config import settings
from ..models.bid import Bid
from ..models.booking_status import BookingTier


class _Expired:
    """Sentinel returned by :func:`remaining` once a bid's window has closed."""

    _instance: Optional["_Expired"] = None

    def __new__(cls) -> "_Expired":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "EXPIRED"

    def __bool__(self) -> bool:
        return False


EXPIRED = _Expired()


def expiry_window(tier: Optional[BookingTier] = None) -> timedelta:
    """Bid validity window for ``tier``."""
    if tier is not None and BookingTier(tier) == BookingTier.PRIORITY:
        if settings.PRIORITY_BID_EXPIRY_MINUTES:
            return timedelta(minutes=settings.PRIORITY_BID_EXPIRY_MINUTES)
    return timedelta(minutes=settings.BID_EXPIRY_MINUTES)


def effective_expiry(bid: Bid) -> datetime:
    """The bid's expiry, falling back to creation + window when unset."""
    if bid.expires_at is not None:
        return bid.expires_at
    if bid.created_at is None:
        raise ValueError(f"Bid {bid.id} has neither expires_at nor created_at")
    return bid.created_at + expiry_window()


def is_expired(bid: Bid, now: datetime) -> bool:
    # Closed interval: a bid is already expired at the exact expiry instant
    return now >= effective_expiry(bid)


def remaining(bid: Bid, now: datetime) -> Union[timedelta, _Expired]:
    expiry = effective_expiry(bid)
    if now >= expiry:
        return EXPIRED
    return expiry - now


def is_near_expiry(bid: Bid, now: datetime, threshold: Optional[timedelta] = None) -> bool:
    """Advisory: True while the bid is live but within ``threshold`` of expiry."""
    if threshold is None:
        threshold = timedelta(seconds=settings.BID_NEAR_EXPIRY_SECONDS)
    left = remaining(bid, now)
    if left is EXPIRED:
        return False
    return left <= threshold


def seconds_remaining(bid: Bid, now: datetime) -> int:
    left = remaining(bid, now)
    if left is EXPIRED:
        return 0
    return int(left.total_seconds())


def format_countdown(bid: Bid, now: datetime) -> str:
    """``m:ss`` countdown label, or ``Expired``."""
    left = remaining(bid, now)
    if left is EXPIRED:
        return "Expired"
    total = int(left.total_seconds())
    minutes, seconds = divmod(total, 60)
    return f"{minutes}:{seconds:02d}"


def urgency_level(bid: Bid, now: datetime) -> str:
    left = remaining(bid, now)
    if left is EXPIRED:
        return "expired"
    if left <= timedelta(minutes=1):
        return "critical"
    if is_near_expiry(bid, now):
        return "warning"
    return "normal"
