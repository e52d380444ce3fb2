from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .. import models
from ..core.config import settings
from ..crud import crud_bid
from ..database import SessionLocal
from ..models import BidStatus
from ..realtime import bus
from ..utils.clock import utcnow
from . import bid_timer

logger = logging.getLogger(__name__)


def alert_scheduler_failure(exc: Exception) -> None:
    """Emit an error log when a background sweep fails."""
    logger.error("Bid expiry sweep failed: %s", exc, exc_info=exc)


def _warn_near_expiry(db: Session, now: datetime) -> List[models.Bid]:
    threshold = timedelta(seconds=settings.BID_NEAR_EXPIRY_SECONDS)
    soon = (
        db.query(models.Bid)
        .filter(
            models.Bid.status == BidStatus.PENDING,
            models.Bid.expires_at > now,
            models.Bid.expires_at <= now + threshold,
        )
        .all()
    )
    for bid in soon:
        bus.publish_topic(
            bus.contractor_topic(bid.contractor_id),
            {
                "type": "bid_expiring",
                "bid_id": bid.id,
                "booking_id": bid.booking_id,
                "seconds_remaining": bid_timer.seconds_remaining(bid, now),
                "countdown": bid_timer.format_countdown(bid, now),
            },
        )
    return soon


def process_bid_expiration(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Expire lapsed bids and warn contractors whose bids are about to lapse.

    Kept apart from the loop so it can be called directly.
    """
    now = now or utcnow()
    expired = crud_bid.expire_stale_bids(db, now=now)
    expiring = _warn_near_expiry(db, now)
    summary = {
        "expired": [b.id for b in expired],
        "near_expiry": [b.id for b in expiring],
    }
    if expired or expiring:
        logger.info("Bid expiry sweep: %s", summary)
    return summary


async def expire_bids_loop(
    interval: Optional[float] = None,
    session_factory: Callable[[], Session] = SessionLocal,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    max_cycles: Optional[int] = None,
) -> None:
    """Run :func:`process_bid_expiration` every ``interval`` seconds.

    Transient ``OperationalError`` is retried with doubling delay (capped at
    60s, five attempts); any other failure is logged and the cycle skipped.
    """
    interval = interval if interval is not None else settings.BID_EXPIRY_SWEEP_SECONDS
    cycles = 0
    while max_cycles is None or cycles < max_cycles:
        cycles += 1
        await sleep(interval)
        delay = 5
        max_retries = 5

        def _expire_once() -> None:
            with session_factory() as db:
                process_bid_expiration(db)

        for attempt in range(max_retries):
            try:
                await asyncio.to_thread(_expire_once)
                break
            except OperationalError as exc:
                alert_scheduler_failure(exc)
                if attempt < max_retries - 1:
                    await sleep(delay)
                    delay = min(delay * 2, 60)
                    continue
                # Give up for this cycle; try again next tick
                break
            except Exception as exc:  # noqa: BLE001 - keep the sweep alive
                alert_scheduler_failure(exc)
                break
