"""Change feed over Redis pub/sub.

Committed booking and bid mutations are fanned out to ``ws-topic:booking:<id>``
and ``ws-topic:contractor:<id>``. Delivery is at-least-once and unordered;
consumers dedupe on ``(entity, id, seq)``.

Publishing is synchronous and best effort: it runs after the database commit
and never undoes it. Subscribing uses ``redis.asyncio``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional

import redis
from redis import asyncio as aioredis

from ..core.config import settings
from ..models import Bid, Booking
from ..schemas.bid import BidRead
from ..schemas.booking import BookingResponse
from ..schemas.events import ChangeEvent

logger = logging.getLogger(__name__)

TOPIC_PREFIX = "ws-topic:"

_redis_client: Optional[redis.Redis] = None


def booking_topic(booking_id: int) -> str:
    return f"booking:{booking_id}"


def contractor_topic(contractor_id: int) -> str:
    return f"contractor:{contractor_id}"


def get_redis_client() -> redis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            socket_connect_timeout=0.5,
            socket_timeout=0.5,
        )
    return _redis_client


def close_redis_client() -> None:
    global _redis_client
    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None


def bus_enabled() -> bool:
    return bool(settings.WS_BUS_ENABLED and (settings.REDIS_URL or "").strip())


def publish_topic(topic: str, envelope: dict[str, Any] | str) -> bool:
    """Publish an envelope to ``ws-topic:<topic>``.

    Returns ``False`` when the bus is disabled or Redis is unreachable.
    """
    if not bus_enabled():
        return False
    if isinstance(envelope, str):
        data = envelope
    else:
        env = dict(envelope)
        env.setdefault("v", 1)
        env.setdefault("topic", topic)
        data = json.dumps(env, separators=(",", ":"), default=str)
    try:
        get_redis_client().publish(f"{TOPIC_PREFIX}{topic}", data)
    except redis.RedisError as exc:
        logger.warning("Change feed publish to %s failed: %s", topic, exc)
        return False
    return True


def publish_change(event: ChangeEvent, contractor_ids: Iterable[Optional[int]] = ()) -> None:
    """Send ``event`` to its booking topic and each affected contractor topic."""
    topics = [booking_topic(event.booking_id)]
    for cid in contractor_ids:
        if cid is not None and contractor_topic(cid) not in topics:
            topics.append(contractor_topic(cid))
    for topic in topics:
        payload = event.model_copy(update={"topic": topic}).model_dump(mode="json")
        publish_topic(topic, payload)


def publish_notice(
    notice_type: str,
    booking_id: int,
    contractor_ids: Iterable[Optional[int]] = (),
    **fields: Any,
) -> None:
    """Advisory message for both parties; it carries no row state to fold."""
    topics = [booking_topic(booking_id)]
    for cid in contractor_ids:
        if cid is not None and contractor_topic(cid) not in topics:
            topics.append(contractor_topic(cid))
    for topic in topics:
        publish_topic(topic, {"type": notice_type, "booking_id": booking_id, **fields})


def booking_event(booking: Booking, op: str = "update") -> ChangeEvent:
    record = BookingResponse.model_validate(booking).model_dump(mode="json")
    return ChangeEvent(
        entity="booking",
        op=op,
        id=booking.id,
        booking_id=booking.id,
        seq=booking.version,
        record=record,
    )


def bid_event(bid: Bid, op: str = "update") -> ChangeEvent:
    record = BidRead.model_validate(bid).model_dump(mode="json")
    return ChangeEvent(
        entity="bid",
        op=op,
        id=bid.id,
        booking_id=bid.booking_id,
        seq=bid.version,
        record=record,
    )


def fanout_booking(booking: Booking, op: str = "update") -> None:
    if not bus_enabled():
        return
    publish_change(booking_event(booking, op), [booking.contractor_id])


def fanout_bids(bids: Iterable[Bid], op: str = "update") -> None:
    if not bus_enabled():
        return
    for bid in bids:
        publish_change(bid_event(bid, op), [bid.contractor_id])


class RedisChangeFeed:
    """Subscriber side of the change feed.

    ``subscribe`` runs until cancelled. When the connection drops it calls
    ``on_lost`` with the error and returns; reconnecting is the caller's job.
    """

    def __init__(self, url: Optional[str] = None, client: Any = None) -> None:
        self.url = url or settings.REDIS_URL
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = aioredis.from_url(self.url, decode_responses=True)
        return self._client

    async def subscribe(
        self,
        topic: str,
        handler: Callable[[ChangeEvent], Awaitable[None] | None],
        on_lost: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        pubsub = self._get_client().pubsub()
        try:
            await pubsub.subscribe(f"{TOPIC_PREFIX}{topic}")
            while True:
                msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if msg is None:
                    continue
                event = _decode(msg.get("data"))
                if event is None:
                    continue
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
        except (redis.ConnectionError, redis.TimeoutError, OSError) as exc:
            logger.warning("Change feed connection for %s lost: %s", topic, exc)
            if on_lost is not None:
                on_lost(exc)
        finally:
            try:
                await pubsub.unsubscribe()
                await pubsub.aclose()
            except (redis.RedisError, OSError) as exc:
                logger.debug("Change feed pubsub close for %s failed: %s", topic, exc)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _decode(data: Any) -> Optional[ChangeEvent]:
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8")
    if not isinstance(data, str):
        return None
    try:
        raw = json.loads(data)
    except ValueError as exc:
        logger.warning("Dropping malformed change event: %s", exc)
        return None
    if isinstance(raw, dict) and "type" in raw and "entity" not in raw:
        # Notices such as bid_expiring are for display only
        return None
    try:
        return ChangeEvent.model_validate(raw)
    except ValueError as exc:
        logger.warning("Dropping malformed change event: %s", exc)
        return None


__all__ = [
    "booking_topic",
    "contractor_topic",
    "get_redis_client",
    "close_redis_client",
    "bus_enabled",
    "publish_topic",
    "publish_change",
    "publish_notice",
    "booking_event",
    "bid_event",
    "fanout_booking",
    "fanout_bids",
    "RedisChangeFeed",
]
