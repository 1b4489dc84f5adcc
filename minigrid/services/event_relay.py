import asyncio
import logging
from typing import Callable, List, Optional

from minigrid.services import aggregation_store as store_events
from minigrid.services.aggregation_store import AggregationStore, SeriesUpdate
from minigrid.services.event_bus import EventSubscription, InProcessEventBus, event_bus
from minigrid.ws_manager import manager as ws_manager

logger = logging.getLogger(__name__)

RELAYED_EVENTS = {"candle", "symbols", "alert", "settings"}


def bridge_store(store: AggregationStore, bus: InProcessEventBus = event_bus) -> Callable[[], None]:
    """
    Publishes store changes on the bus as JSON-ready payloads.
    Only the throttled series is relayed, and only its last candle.
    Returns a callable that detaches every listener.
    """
    last_alert = {"entry": store.alert_log[0] if store.alert_log else None}

    def _on_candles(update: SeriesUpdate):
        if not update.series:
            return
        last = update.series[-1]
        bus.publish_nowait(
            "candle",
            {"symbol": update.symbol, "interval": last.interval, "candle": last.model_dump(mode="json")},
            symbol=update.symbol,
        )

    def _on_symbols(symbols):
        bus.publish_nowait("symbols", list(symbols))

    def _on_alert_log(entries):
        head = entries[0] if entries else None
        if head is None or head is last_alert["entry"]:
            return
        last_alert["entry"] = head
        bus.publish_nowait("alert", head.model_dump(mode="json"), symbol=head.symbol)

    def _on_settings(settings):
        bus.publish_nowait("settings", settings.to_public())

    detach: List[Callable[[], None]] = [
        store.listen(store_events.CANDLES, _on_candles),
        store.listen(store_events.SYMBOLS, _on_symbols),
        store.listen(store_events.ALERT_LOG, _on_alert_log),
        store.listen(store_events.SETTINGS, _on_settings),
    ]

    def _detach_all():
        for fn in detach:
            fn()

    return _detach_all


class EventRelay:
    """
    Consumes in-process events and relays them to websocket clients.
    This keeps the store decoupled from direct websocket delivery.
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(EventRelay, cls).__new__(cls)
            cls._instance.is_running = False
            cls._instance._task: Optional[asyncio.Task] = None
            cls._instance._sub: Optional[EventSubscription] = None
            cls._instance.relayed_count = 0
        return cls._instance

    async def start(self):
        if self.is_running:
            return
        self.is_running = True
        self._sub = event_bus.subscribe(RELAYED_EVENTS)
        self._task = asyncio.create_task(self._run(), name="event-relay-loop")
        logger.info("event_relay started")

    async def stop(self):
        self.is_running = False
        task = self._task
        self._task = None
        if task and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._sub is not None:
            event_bus.unsubscribe(self._sub)
            self._sub = None
        logger.info("event_relay stopped relayed=%s", self.relayed_count)

    async def _run(self):
        while self.is_running:
            sub = self._sub
            if sub is None:
                await asyncio.sleep(0.1)
                continue
            try:
                envelope = await sub.queue.get()
            except asyncio.CancelledError:
                break

            try:
                await ws_manager.broadcast({"type": envelope.event_type, "data": envelope.data})
                self.relayed_count += 1
            except Exception:
                logger.exception("event_relay broadcast failed event_type=%s", envelope.event_type)
            finally:
                sub.queue.task_done()


event_relay = EventRelay()
