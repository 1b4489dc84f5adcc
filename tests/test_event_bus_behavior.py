import asyncio

from minigrid.models.alert_models import AlertType
from minigrid.services.aggregation_store import AggregationStore
from minigrid.services.event_bus import event_bus
from minigrid.services.event_relay import bridge_store, event_relay
from minigrid.ws_manager import manager as ws_manager

from fakes import FakeMarketData, make_candle, memory_settings, settle


def _drain_queue(q):
    out = []
    while True:
        try:
            out.append(q.get_nowait())
        except asyncio.QueueEmpty:
            break
    return out


def test_event_bus_publish_and_filtering():
    event_bus._reset_for_tests()

    async def _run():
        sub_all = event_bus.subscribe()
        sub_alerts = event_bus.subscribe({"alert"})

        await event_bus.publish("candle", {"symbol": "BTCUSDT"}, source="store")
        event_bus.publish_nowait("alert", {"symbol": "BTCUSDT"}, source="alerts")

        all_events = _drain_queue(sub_all.queue)
        alert_events = _drain_queue(sub_alerts.queue)

        assert [e.event_type for e in all_events] == ["candle", "alert"]
        assert [e.event_type for e in alert_events] == ["alert"]
        assert all_events[0].seq == 1
        assert all_events[1].seq == 1

        event_bus.unsubscribe(sub_all)
        event_bus.unsubscribe(sub_alerts)

    asyncio.run(_run())
    assert event_bus.stats()["subscriptions"] == 0


def test_full_queue_drops_and_counts():
    event_bus._reset_for_tests()

    async def _run():
        sub = event_bus.subscribe(max_queue_size=100)
        for i in range(105):
            event_bus.publish_nowait("candle", {"i": i})
        assert sub.queue.qsize() == 100
        event_bus.unsubscribe(sub)

    asyncio.run(_run())
    assert event_bus.stats()["dropped_count"] == 5


def test_store_bridge_publishes_relayable_payloads():
    event_bus._reset_for_tests()
    market = FakeMarketData()
    store = AggregationStore(market, memory_settings(throttleDelay=0))

    async def _run():
        sub = event_bus.subscribe()
        detach = bridge_store(store, event_bus)
        await store.start()
        await settle()
        market.push(make_candle("BTCUSDT", 0, close=42))
        store.trigger_alert(AlertType.PRICE_UP, "BTCUSDT")
        store.update_settings(gridColumns=3)
        detach()
        market.push(make_candle("BTCUSDT", 60_000, close=43))
        await store.stop()
        return _drain_queue(sub.queue)

    envelopes = asyncio.run(_run())
    types = [e.event_type for e in envelopes]
    assert types.count("candle") == 1
    assert "symbols" in types
    assert "alert" in types
    assert "settings" in types

    candle = next(e for e in envelopes if e.event_type == "candle")
    assert candle.symbol == "BTCUSDT"
    assert candle.data["candle"]["close"] == 42
    settings = next(e for e in envelopes if e.event_type == "settings")
    assert settings.data["gridColumns"] == 3


def test_event_relay_forwards_to_websocket_manager(monkeypatch):
    event_bus._reset_for_tests()
    calls = []

    async def _fake_broadcast(message):
        calls.append(message)

    monkeypatch.setattr(ws_manager, "broadcast", _fake_broadcast)

    async def _run():
        await event_relay.stop()
        await event_relay.start()
        event_bus.publish_nowait("candle", {"symbol": "BTCUSDT", "candle": {"close": 1}})
        event_bus.publish_nowait("internal_only", {"x": 1})
        event_bus.publish_nowait("settings", {"interval": "5m"})
        await asyncio.sleep(0.05)
        await event_relay.stop()

    asyncio.run(_run())

    assert [c["type"] for c in calls] == ["candle", "settings"]
    assert calls[1]["data"] == {"interval": "5m"}
