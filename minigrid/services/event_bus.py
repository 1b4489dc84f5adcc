import asyncio
import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventEnvelope:
    event_type: str
    data: Any
    ts_ms: int
    source: str
    seq: int
    symbol: Optional[str] = None


@dataclass
class EventSubscription:
    sub_id: int
    queue: asyncio.Queue
    event_types: Optional[Set[str]] = None


class InProcessEventBus:
    """
    In-memory fanout between the aggregation store and delivery surfaces
    (websocket relay). Store listeners are synchronous, so publishing never
    awaits: a full subscriber queue drops the envelope and counts it.
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(InProcessEventBus, cls).__new__(cls)
            cls._instance._subs: Dict[int, EventSubscription] = {}
            cls._instance._sub_id = 0
            cls._instance._seq_by_source: Dict[str, int] = {}
            cls._instance._lock = Lock()
            cls._instance.published_count = 0
            cls._instance.dropped_count = 0
        return cls._instance

    def subscribe(self, event_types: Optional[Set[str]] = None, max_queue_size: int = 2000) -> EventSubscription:
        normalized = {e for e in (event_types or set()) if e} or None
        queue: asyncio.Queue = asyncio.Queue(maxsize=max(100, int(max_queue_size)))
        with self._lock:
            self._sub_id += 1
            sub = EventSubscription(sub_id=self._sub_id, queue=queue, event_types=normalized)
            self._subs[sub.sub_id] = sub
        logger.info(
            "event_bus subscribe sub_id=%s filters=%s total=%s",
            sub.sub_id,
            sorted(normalized) if normalized else "ALL",
            len(self._subs),
        )
        return sub

    def unsubscribe(self, sub: EventSubscription):
        with self._lock:
            removed = self._subs.pop(sub.sub_id, None)
        if removed is not None:
            logger.info("event_bus unsubscribe sub_id=%s total=%s", sub.sub_id, len(self._subs))

    def _next_seq(self, source: str) -> int:
        with self._lock:
            nxt = int(self._seq_by_source.get(source, 0) + 1)
            self._seq_by_source[source] = nxt
        return nxt

    def publish_nowait(
        self,
        event_type: str,
        data: Any,
        *,
        source: str = "store",
        symbol: Optional[str] = None,
        ts_ms: Optional[int] = None,
    ) -> EventEnvelope:
        if not event_type:
            raise ValueError("event_type is required")

        envelope = EventEnvelope(
            event_type=event_type,
            data=data,
            ts_ms=int(ts_ms or int(time.time() * 1000)),
            source=source,
            seq=self._next_seq(source),
            symbol=symbol,
        )

        with self._lock:
            subscriptions = list(self._subs.values())

        for sub in subscriptions:
            if sub.event_types and event_type not in sub.event_types:
                continue
            try:
                sub.queue.put_nowait(envelope)
            except asyncio.QueueFull:
                self.dropped_count += 1

        self.published_count += 1
        return envelope

    async def publish(self, event_type: str, data: Any, **kwargs) -> EventEnvelope:
        return self.publish_nowait(event_type, data, **kwargs)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total_subs = len(self._subs)
        return {
            "subscriptions": total_subs,
            "published_count": int(self.published_count),
            "dropped_count": int(self.dropped_count),
        }

    def _reset_for_tests(self):
        with self._lock:
            self._subs.clear()
            self._sub_id = 0
            self._seq_by_source.clear()
        self.published_count = 0
        self.dropped_count = 0


event_bus = InProcessEventBus()
