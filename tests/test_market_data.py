import asyncio
import json
import logging

from minigrid.services.market_data import (
    BinanceFuturesClient,
    parse_exchange_symbol,
    parse_kline_event,
    parse_kline_row,
    parse_ticker_row,
)
from minigrid.services.market_data import _StreamSubscription


def _kline_event(**overrides):
    k = {
        "t": 1700000000000,
        "T": 1700000059999,
        "s": "BTCUSDT",
        "i": "1m",
        "o": "37000.1",
        "c": "37010.5",
        "h": "37020.0",
        "l": "36990.0",
        "v": "12.5",
        "n": 320,
        "x": False,
        "q": "462000.7",
    }
    k.update(overrides)
    return {"e": "kline", "E": 1700000001000, "s": "BTCUSDT", "k": k}


def test_parse_kline_event():
    candle = parse_kline_event(_kline_event())
    assert candle.symbol == "BTCUSDT"
    assert candle.interval == "1m"
    assert candle.open_time == 1700000000000
    assert candle.close == 37010.5
    assert candle.volume == 12.5
    assert candle.trades == 320
    assert candle.closed is False


def test_parse_kline_event_rejects_other_payloads():
    assert parse_kline_event({"e": "24hrTicker"}) is None
    assert parse_kline_event(_kline_event(i="7m")) is None
    assert parse_kline_event(_kline_event(t=None)) is None
    assert parse_kline_event(["not", "a", "dict"]) is None


def test_malformed_numbers_become_zero():
    candle = parse_kline_event(_kline_event(v="NaN", c="garbage"))
    assert candle.volume == 0.0
    assert candle.close == 0.0


def test_parse_kline_row():
    row = [1700000000000, "1.0", "2.0", "0.5", "1.5", "100", 1700000059999, "150", 42, "50", "75", "0"]
    candle = parse_kline_row("ETHUSDT", "5m", row)
    assert candle.interval == "5m"
    assert candle.high == 2.0
    assert candle.quote_volume == 150.0
    assert candle.closed is True
    assert parse_kline_row("ETHUSDT", "5m", [1, 2]) is None


def test_parse_exchange_symbol_and_ticker():
    meta = parse_exchange_symbol({
        "symbol": "solusdt",
        "pricePrecision": 4,
        "quantityPrecision": 0,
        "baseAsset": "SOL",
        "quoteAsset": "USDT",
        "contractType": "PERPETUAL",
        "status": "TRADING",
        "pair": "SOLUSDT",
    })
    assert meta.symbol == "SOLUSDT"
    assert meta.price_precision == 4
    assert meta.pair == "SOLUSDT"
    assert parse_exchange_symbol({}) is None

    ticker = parse_ticker_row({"e": "24hrTicker", "s": "BTCUSDT", "c": "37000", "q": "1e9", "P": "-1.25"})
    assert ticker.quote_volume == 1e9
    assert ticker.price_change_percent == -1.25
    assert parse_ticker_row({"c": "1"}) is None


def test_fetch_metadata_keeps_trading_instruments(monkeypatch):
    client = BinanceFuturesClient()

    async def _fake_get_json(path, params=None):
        assert path == "/fapi/v1/exchangeInfo"
        return {"symbols": [
            {"symbol": "BTCUSDT", "status": "TRADING"},
            {"symbol": "OLDUSDT", "status": "SETTLING"},
            {"symbol": "ETHUSDT", "status": "TRADING"},
        ]}

    monkeypatch.setattr(client, "_get_json", _fake_get_json)
    instruments = asyncio.run(client.fetch_metadata())
    assert [m.symbol for m in instruments] == ["BTCUSDT", "ETHUSDT"]


def test_fetch_history_requests_klines(monkeypatch):
    client = BinanceFuturesClient()
    calls = []

    async def _fake_get_json(path, params=None):
        calls.append((path, params))
        return [
            [0, "1", "1", "1", "1", "10", 59999, "10", 1],
            [60000, "1", "1", "1", "2", "11", 119999, "22", 2],
            "junk",
        ]

    monkeypatch.setattr(client, "_get_json", _fake_get_json)
    candles = asyncio.run(client.fetch_history("BTCUSDT", "1m", 500))
    assert calls == [("/fapi/v1/klines", {"symbol": "BTCUSDT", "interval": "1m", "limit": 500})]
    assert [c.open_time for c in candles] == [0, 60000]


def test_subscribe_stream_shards_connections_and_closes_them(monkeypatch):
    client = BinanceFuturesClient(streams_per_connection=2)
    opened = []

    async def _fake_loop(streams, on_payload, subscription):
        opened.append(list(streams))
        await asyncio.sleep(3600)

    monkeypatch.setattr(client, "_stream_loop", _fake_loop)

    async def _run():
        pairs = [(s, "1m") for s in ("BTCUSDT", "ETHUSDT", "SOLUSDT", "ADAUSDT", "XRPUSDT")]
        unsubscribe = client.subscribe_stream(pairs, lambda candle: None)
        await asyncio.sleep(0)
        unsubscribe()
        await asyncio.sleep(0)

    asyncio.run(_run())
    assert len(opened) == 3
    assert opened[0] == ["btcusdt@kline_1m", "ethusdt@kline_1m"]


def test_dispatch_ignores_acks_and_inactive_subscriptions(caplog):
    client = BinanceFuturesClient()
    received = []
    sub = _StreamSubscription("test")

    client._dispatch(json.dumps({"result": None, "id": 1}), received.append, sub)
    client._dispatch("not json", received.append, sub)
    client._dispatch(json.dumps({"stream": "x", "data": {"a": 1}}), received.append, sub)
    sub.active = False
    client._dispatch(json.dumps({"stream": "x", "data": {"a": 2}}), received.append, sub)
    assert received == [{"a": 1}]

    def _broken(payload):
        raise RuntimeError("consumer bug")

    with caplog.at_level(logging.ERROR):
        client._dispatch(json.dumps({"stream": "x", "data": {}}), _broken, _StreamSubscription("other"))
    assert "Stream callback failed" in caplog.text
