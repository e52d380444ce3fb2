"""Client-side fold of the change feed into a local snapshot.

The bridge owns an explicit :class:`SnapshotStore`; nothing here is module
state, so two bridges never share rows. Events may arrive twice or out of
order: a row is only overwritten by an event carrying a strictly newer
``seq`` (the row's ``version``).
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

import redis

from ..core.config import settings
from ..models import Bid, Booking
from ..schemas.events import ChangeEvent
from ..utils.errors import Disconnected
from . import bus

logger = logging.getLogger(__name__)

Key = Tuple[str, int]
Rows = Iterable[Tuple[str, Any]]


class SnapshotStore:
    """Rows keyed by ``(entity, id)`` with the last applied sequence marker."""

    def __init__(self) -> None:
        self._rows: Dict[Key, Dict[str, Any]] = {}
        self._seq: Dict[Key, int] = {}

    def get(self, entity: str, entity_id: int) -> Optional[Dict[str, Any]]:
        row = self._rows.get((entity, entity_id))
        return dict(row) if row is not None else None

    def seq(self, entity: str, entity_id: int) -> Optional[int]:
        return self._seq.get((entity, entity_id))

    def put(self, entity: str, entity_id: int, record: Dict[str, Any], seq: int) -> None:
        self._rows[(entity, entity_id)] = dict(record)
        self._seq[(entity, entity_id)] = seq

    def rows(self, entity: str) -> List[Dict[str, Any]]:
        return [dict(r) for (e, _), r in self._rows.items() if e == entity]

    def as_dict(self) -> Dict[str, Dict[int, Dict[str, Any]]]:
        out: Dict[str, Dict[int, Dict[str, Any]]] = {"booking": {}, "bid": {}}
        for (entity, entity_id), row in self._rows.items():
            out.setdefault(entity, {})[entity_id] = copy.deepcopy(row)
        return out

    def clear(self) -> None:
        self._rows.clear()
        self._seq.clear()

    def __len__(self) -> int:
        return len(self._rows)


class Subscription:
    """Handle for one topic. ``release()`` takes effect exactly once."""

    def __init__(self, topic: str, on_release: Callable[["Subscription"], None]) -> None:
        self.topic = topic
        self._on_release = on_release
        self._released = False
        self.task: Optional[asyncio.Task] = None

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        if self._released:
            return False
        self._released = True
        self._on_release(self)
        return True

    async def wait(self) -> None:
        """Wait for the topic's feed task; re-raises ``Disconnected``."""
        if self.task is not None:
            try:
                await self.task
            except asyncio.CancelledError:
                if not self._released:
                    raise

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


async def _maybe_await(value: Union[Any, Awaitable[Any]]) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _record_for(entity: str, row: Any) -> Tuple[int, int, Dict[str, Any]]:
    """``(id, seq, record)`` from an ORM row or a plain dict."""
    if isinstance(row, Booking):
        ev = bus.booking_event(row)
        return ev.id, ev.seq, ev.record
    if isinstance(row, Bid):
        ev = bus.bid_event(row)
        return ev.id, ev.seq, ev.record
    record = dict(row)
    return int(record["id"]), int(record.get("version", 0)), record


class RealtimeSyncBridge:
    """Folds change events for subscribed topics into ``store``.

    ``feed`` is anything with ``async subscribe(topic, handler, on_lost)``,
    normally :class:`marketplace.realtime.bus.RedisChangeFeed`.
    """

    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    IDLE = "idle"

    def __init__(
        self,
        feed: Any,
        store: Optional[SnapshotStore] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
    ) -> None:
        self.feed = feed
        self.store = store if store is not None else SnapshotStore()
        self._sleep = sleep
        self.max_attempts = (
            max_attempts if max_attempts is not None else settings.REALTIME_MAX_RECONNECT_ATTEMPTS
        )
        self.backoff_base = (
            backoff_base if backoff_base is not None else settings.REALTIME_BACKOFF_BASE_SECONDS
        )
        self.backoff_max = (
            backoff_max if backoff_max is not None else settings.REALTIME_BACKOFF_MAX_SECONDS
        )
        self._subs: Dict[str, Subscription] = {}
        self.state = self.IDLE
        self.last_error: Optional[BaseException] = None

    # ── folding ──────────────────────────────────────────────────────────

    def apply_event(self, event: Union[ChangeEvent, Dict[str, Any]]) -> bool:
        """Fold one event; returns whether the snapshot changed.

        Inserts and updates share one rule: a row is written when it is
        unknown or the event's ``seq`` is newer than the stored one.
        """
        if not isinstance(event, ChangeEvent):
            event = ChangeEvent.model_validate(event)
        last = self.store.seq(event.entity, event.id)
        if last is not None and event.seq <= last:
            logger.debug(
                "Dropping stale %s %s event for %s#%s (seq %s <= %s)",
                event.op,
                event.entity,
                event.entity,
                event.id,
                event.seq,
                last,
            )
            return False
        self.store.put(event.entity, event.id, event.record, event.seq)
        return True

    def apply_mutation(self, entity: str, row: Any, force: bool = False) -> bool:
        """Fold a row returned directly by a command, with the same guard."""
        entity_id, seq, record = _record_for(entity, row)
        if not force:
            last = self.store.seq(entity, entity_id)
            if last is not None and seq <= last:
                return False
        self.store.put(entity, entity_id, record, seq)
        return True

    def snapshot(self) -> Dict[str, Dict[int, Dict[str, Any]]]:
        return self.store.as_dict()

    def booking_view(self, booking_id: int) -> Dict[str, Any]:
        bids = [b for b in self.store.rows("bid") if b.get("booking_id") == booking_id]
        bids.sort(key=lambda b: (float(b.get("amount") or 0), str(b.get("created_at") or ""), b["id"]))
        return {"booking": self.store.get("booking", booking_id), "bids": bids}

    async def guarded_mutation(
        self,
        mutation: Callable[[], Union[Rows, Awaitable[Rows]]],
        refetch: Callable[[], Union[Rows, Awaitable[Rows]]],
    ) -> List[Tuple[str, Any]]:
        """Run ``mutation`` and fold the rows it returns.

        If the caller is cancelled mid-flight the outcome is unknown, so the
        affected rows are re-read through ``refetch`` before re-raising.
        """
        try:
            rows = list(await _maybe_await(mutation()))
        except asyncio.CancelledError:
            logger.info("Mutation cancelled; re-syncing from the source of truth")
            fresh = await _maybe_await(refetch())
            for entity, row in fresh:
                self.apply_mutation(entity, row, force=True)
            raise
        for entity, row in rows:
            self.apply_mutation(entity, row)
        return rows

    # ── subscriptions ────────────────────────────────────────────────────

    def subscribe_booking(self, booking_id: int) -> Subscription:
        return self._subscribe(bus.booking_topic(booking_id))

    def subscribe_contractor(self, contractor_id: int) -> Subscription:
        return self._subscribe(bus.contractor_topic(contractor_id))

    def active_topics(self) -> List[str]:
        return sorted(self._subs)

    def _subscribe(self, topic: str) -> Subscription:
        existing = self._subs.get(topic)
        if existing is not None and not existing.released:
            if existing.task is None or not existing.task.done():
                return existing
        sub = Subscription(topic, self._release)
        self._subs[topic] = sub
        sub.task = asyncio.get_running_loop().create_task(self._run(sub))
        sub.task.add_done_callback(lambda task: self._forget(sub, task))
        return sub

    def _forget(self, sub: Subscription, task: asyncio.Task) -> None:
        # A finished feed task no longer serves its topic
        if self._subs.get(sub.topic) is sub:
            del self._subs[sub.topic]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Change feed task for %s ended: %s", sub.topic, task.exception())

    def _release(self, sub: Subscription) -> None:
        if self._subs.get(sub.topic) is sub:
            del self._subs[sub.topic]
        if sub.task is not None and not sub.task.done():
            sub.task.cancel()
        logger.debug("Released change feed topic %s", sub.topic)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect ``attempt`` (1-based)."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    async def _run(self, sub: Subscription) -> None:
        attempt = 0

        async def _handler(event: ChangeEvent) -> None:
            nonlocal attempt
            if sub.released:
                return
            attempt = 0
            self.state = self.CONNECTED
            self.apply_event(event)

        def _on_lost(exc: BaseException) -> None:
            self.last_error = exc

        while not sub.released:
            self.state = self.CONNECTED if attempt == 0 else self.RECONNECTING
            try:
                await self.feed.subscribe(sub.topic, _handler, _on_lost)
            except (redis.RedisError, OSError) as exc:
                self.last_error = exc
            if sub.released:
                return
            attempt += 1
            if attempt > self.max_attempts:
                self.state = self.DISCONNECTED
                logger.error(
                    "Change feed for %s lost after %d reconnect attempts: %s",
                    sub.topic,
                    self.max_attempts,
                    self.last_error,
                )
                raise Disconnected(
                    "Live updates are unavailable; refresh to see the latest state",
                    {"topic": sub.topic},
                )
            delay = self.backoff_delay(attempt)
            logger.warning(
                "Change feed for %s dropped; reconnect %d/%d in %.1fs",
                sub.topic,
                attempt,
                self.max_attempts,
                delay,
            )
            self.state = self.RECONNECTING
            await self._sleep(delay)

    async def close(self) -> None:
        subs = list(self._subs.values())
        for sub in subs:
            sub.release()
        for sub in subs:
            await sub.wait()
        self.state = self.IDLE
