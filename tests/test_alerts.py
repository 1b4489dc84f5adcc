import asyncio
import logging

from minigrid.models.alert_models import AlertLogEntry, AlertType
from minigrid.notifications import CompositeAlertSink, LogAlertSink, TelegramAlertSink, format_alert
from minigrid.services.alerts import (
    MAX_LOG_SIZE,
    AlertDispatcher,
    AlertLog,
    build_alert_entry,
    crossed_levels,
)

from fakes import make_candle


def _entry(symbol="BTCUSDT", ts="2024-01-01T00:00:00+00:00", alert_type=AlertType.PRICE_UP):
    return AlertLogEntry(type=alert_type, symbol=symbol, price=1.0, volume=2.0, timestamp=ts)


def test_entry_uses_latest_live_values():
    series = (make_candle("BTCUSDT", 0, close=10, volume=3), make_candle("BTCUSDT", 60_000, close=11, volume=4))
    entry = build_alert_entry(AlertType.VOLUME_ANOMALY, "BTCUSDT", series)
    assert entry.price == 11
    assert entry.volume == 4
    assert entry.type == AlertType.VOLUME_ANOMALY
    assert "T" in entry.timestamp


def test_entry_without_live_data_is_zero():
    entry = build_alert_entry("PRICE_DOWN", "ETHUSDT", ())
    assert (entry.price, entry.volume) == (0.0, 0.0)
    assert entry.type == AlertType.PRICE_DOWN


def test_log_is_most_recent_first_and_capped():
    log = AlertLog()
    for i in range(MAX_LOG_SIZE + 5):
        log.push(_entry(symbol=f"S{i}"))
    assert len(log) == MAX_LOG_SIZE
    assert log.entries[0].symbol == f"S{MAX_LOG_SIZE + 4}"
    assert log.entries[-1].symbol == "S5"


def test_push_returns_new_tuple_each_time():
    log = AlertLog()
    first = log.push(_entry())
    second = log.push(_entry(symbol="ETHUSDT"))
    assert first is not second
    assert len(first) == 1


def test_unseen_count_against_last_seen_timestamp():
    log = AlertLog([
        _entry(ts="2024-01-03T00:00:00+00:00"),
        _entry(ts="2024-01-02T00:00:00+00:00"),
        _entry(ts="2024-01-01T00:00:00+00:00"),
    ])
    assert log.unseen_count(None) == 3
    assert log.unseen_count("2024-01-01T12:00:00+00:00") == 2
    assert log.unseen_count("2024-01-05T00:00:00+00:00") == 0


def test_crossed_levels_both_directions():
    assert crossed_levels(100, 106, [105, 200]) == [(AlertType.PRICE_UP, 105)]
    assert crossed_levels(106, 99, [105, 100, 50]) == [(AlertType.PRICE_DOWN, 105), (AlertType.PRICE_DOWN, 100)]
    assert crossed_levels(None, 106, [105]) == []
    assert crossed_levels(105, 105, [105]) == []


def test_dispatcher_runs_async_sinks_in_background_and_logs_failures(caplog):
    delivered = []

    class _Sink:
        async def notify(self, entry):
            if entry.symbol == "BAD":
                raise RuntimeError("delivery failed")
            delivered.append(entry.symbol)

    async def _run():
        dispatcher = AlertDispatcher(_Sink())
        dispatcher.dispatch(_entry(symbol="BTCUSDT"))
        dispatcher.dispatch(_entry(symbol="BAD"))
        assert delivered == []
        await dispatcher.drain()
        await asyncio.sleep(0)

    with caplog.at_level(logging.ERROR):
        asyncio.run(_run())

    assert delivered == ["BTCUSDT"]
    assert "Alert delivery failed" in caplog.text


def test_dispatcher_without_sink_is_noop():
    AlertDispatcher(None).dispatch(_entry())


def test_log_sink_writes_distinct_line_per_type(caplog):
    sink = LogAlertSink()
    with caplog.at_level(logging.INFO):
        sink.notify(_entry(alert_type=AlertType.PRICE_UP))
        sink.notify(_entry(alert_type=AlertType.PRICE_DOWN))
        sink.notify(_entry(alert_type=AlertType.VOLUME_ANOMALY))
    assert "PRICE_UP" in caplog.text
    assert "PRICE_DOWN" in caplog.text
    assert "VOLUME_ANOMALY" in caplog.text


def test_composite_sink_fans_out_to_sync_and_async_sinks():
    seen = []

    class _SyncSink:
        def notify(self, entry):
            seen.append(("sync", entry.symbol))

    class _AsyncSink:
        async def notify(self, entry):
            seen.append(("async", entry.symbol))

    class _BrokenSink:
        def notify(self, entry):
            raise RuntimeError("boom")

    composite = CompositeAlertSink([_SyncSink(), _BrokenSink(), _AsyncSink()])
    asyncio.run(composite.notify(_entry()))
    assert seen == [("sync", "BTCUSDT"), ("async", "BTCUSDT")]


def test_telegram_sink_without_credentials_is_disabled():
    sink = TelegramAlertSink(None, None)
    assert sink.enabled is False
    asyncio.run(sink.notify(_entry()))


def test_format_alert_mentions_symbol_and_price():
    text = format_alert(_entry(alert_type=AlertType.VOLUME_ANOMALY))
    assert "Volume Anomaly" in text
    assert "BTCUSDT" in text
