import asyncio
import itertools
import json
import logging
import random
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import aiohttp
from aiohttp import WSMsgType

from minigrid.models.market_models import INTERVALS, Candle, InstrumentMetadata, Interval, TickerSnapshot

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]
OnCandle = Callable[[Candle], None]
OnTickerBatch = Callable[[List[TickerSnapshot]], None]


class MarketDataPort(Protocol):
    async def fetch_metadata(self) -> List[InstrumentMetadata]:
        ...

    async def fetch_history(self, symbol: str, interval: Interval, limit: int) -> List[Candle]:
        ...

    def subscribe_stream(self, pairs: Sequence[Tuple[str, Interval]], on_candle: OnCandle) -> Unsubscribe:
        ...

    def subscribe_ticker(self, on_batch: OnTickerBatch) -> Unsubscribe:
        ...


def parse_exchange_symbol(row: Dict[str, Any]) -> Optional[InstrumentMetadata]:
    symbol = row.get("symbol") if isinstance(row, dict) else None
    if not symbol:
        return None
    extra = {k: v for k, v in row.items() if k in ("pair", "marginAsset", "onboardDate", "filters")}
    return InstrumentMetadata(
        symbol=str(symbol).upper(),
        price_precision=int(row.get("pricePrecision", 0) or 0),
        quantity_precision=int(row.get("quantityPrecision", 0) or 0),
        base_asset=str(row.get("baseAsset", "")),
        quote_asset=str(row.get("quoteAsset", "")),
        contract_type=str(row.get("contractType", "")),
        status=str(row.get("status", "TRADING")),
        **extra,
    )


def parse_kline_row(symbol: str, interval: Interval, row: Sequence[Any]) -> Optional[Candle]:
    """REST kline row: [openTime, o, h, l, c, v, closeTime, quoteVolume, trades, ...]"""
    if not isinstance(row, (list, tuple)) or len(row) < 6:
        return None
    return Candle(
        symbol=symbol,
        interval=interval,
        open_time=int(row[0]),
        open=row[1],
        high=row[2],
        low=row[3],
        close=row[4],
        volume=row[5],
        close_time=int(row[6]) if len(row) > 6 else None,
        quote_volume=row[7] if len(row) > 7 else 0.0,
        trades=int(row[8]) if len(row) > 8 else 0,
        closed=True,
    )


def parse_kline_event(data: Dict[str, Any]) -> Optional[Candle]:
    """Websocket kline event: {"e": "kline", "s": "BTCUSDT", "k": {...}}"""
    if not isinstance(data, dict) or data.get("e") != "kline":
        return None
    k = data.get("k") or {}
    interval = k.get("i")
    symbol = k.get("s") or data.get("s")
    if interval not in INTERVALS or not symbol or k.get("t") is None:
        return None
    return Candle(
        symbol=str(symbol).upper(),
        interval=interval,
        open_time=int(k["t"]),
        open=k.get("o"),
        high=k.get("h"),
        low=k.get("l"),
        close=k.get("c"),
        volume=k.get("v"),
        close_time=int(k["T"]) if k.get("T") is not None else None,
        quote_volume=k.get("q"),
        trades=int(k.get("n", 0) or 0),
        closed=bool(k.get("x", False)),
    )


def parse_ticker_row(row: Dict[str, Any]) -> Optional[TickerSnapshot]:
    """24hr ticker event: {"e": "24hrTicker", "s": ..., "c": last, "q": quoteVolume, "P": changePct}"""
    if not isinstance(row, dict) or not row.get("s"):
        return None
    return TickerSnapshot(
        symbol=str(row["s"]).upper(),
        last_price=row.get("c"),
        quote_volume=row.get("q"),
        price_change_percent=row.get("P"),
    )


def _chunked(items: List[str], size: int) -> List[List[str]]:
    return [items[i:i + size] for i in range(0, len(items), max(1, size))]


class _StreamSubscription:
    """Connection tasks of one logical subscription. Closing it silences every callback."""

    def __init__(self, label: str):
        self.label = label
        self.active = True
        self.tasks: List[asyncio.Task] = []

    def close(self):
        if not self.active:
            return
        self.active = False
        for task in self.tasks:
            if not task.done():
                task.cancel()
        logger.info("Stream subscription closed label=%s connections=%s", self.label, len(self.tasks))
        self.tasks = []


class BinanceFuturesClient:
    """
    Binance USD-M futures implementation of MarketDataPort.
    REST for metadata/history, combined websocket streams for klines and tickers.
    """

    def __init__(
        self,
        rest_url: str = "https://fapi.binance.com",
        ws_url: str = "wss://fstream.binance.com/stream",
        history_concurrency: int = 8,
        streams_per_connection: int = 200,
        reconnect_min_sec: float = 2.0,
        reconnect_max_sec: float = 60.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.rest_url = rest_url.rstrip("/")
        self.ws_url = ws_url
        self.history_concurrency = max(1, history_concurrency)
        self.streams_per_connection = max(1, streams_per_connection)
        self.reconnect_min_sec = reconnect_min_sec
        self.reconnect_max_sec = max(reconnect_min_sec, reconnect_max_sec)
        self._session = session
        self._owns_session = session is None
        self._history_sem: Optional[asyncio.Semaphore] = None
        self._req_ids = itertools.count(1)

    @classmethod
    def from_config(cls, cfg) -> "BinanceFuturesClient":
        return cls(
            rest_url=cfg.BINANCE_FUTURES_REST_URL,
            ws_url=cfg.BINANCE_FUTURES_WS_URL,
            history_concurrency=cfg.HISTORY_CONCURRENCY,
            streams_per_connection=cfg.STREAMS_PER_CONNECTION,
            reconnect_min_sec=cfg.WS_RECONNECT_MIN_SEC,
            reconnect_max_sec=cfg.WS_RECONNECT_MAX_SEC,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10))
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        session = await self._get_session()
        async with session.get(f"{self.rest_url}{path}", params=params) as resp:
            resp.raise_for_status()
            return await resp.json()

    async def fetch_metadata(self) -> List[InstrumentMetadata]:
        data = await self._get_json("/fapi/v1/exchangeInfo")
        rows = data.get("symbols", []) if isinstance(data, dict) else []
        instruments = []
        for row in rows:
            meta = parse_exchange_symbol(row)
            if meta is not None and meta.status == "TRADING":
                instruments.append(meta)
        logger.info("Exchange metadata loaded symbols=%s", len(instruments))
        return instruments

    async def fetch_history(self, symbol: str, interval: Interval, limit: int) -> List[Candle]:
        if self._history_sem is None:
            self._history_sem = asyncio.Semaphore(self.history_concurrency)
        async with self._history_sem:
            rows = await self._get_json(
                "/fapi/v1/klines",
                params={"symbol": symbol, "interval": interval, "limit": int(limit)},
            )
        candles = []
        for row in rows if isinstance(rows, list) else []:
            candle = parse_kline_row(symbol, interval, row)
            if candle is not None:
                candles.append(candle)
        return candles

    def subscribe_stream(self, pairs: Sequence[Tuple[str, Interval]], on_candle: OnCandle) -> Unsubscribe:
        streams = list(dict.fromkeys(f"{symbol.lower()}@kline_{interval}" for symbol, interval in pairs))
        subscription = _StreamSubscription(label=f"klines:{len(streams)}")

        def _on_payload(payload: Any):
            candle = parse_kline_event(payload)
            if candle is not None:
                on_candle(candle)

        for idx, chunk in enumerate(_chunked(streams, self.streams_per_connection)):
            subscription.tasks.append(
                asyncio.create_task(
                    self._stream_loop(chunk, _on_payload, subscription),
                    name=f"kline-stream-{idx}",
                )
            )
        logger.info(
            "Kline subscription opened streams=%s connections=%s",
            len(streams),
            len(subscription.tasks),
        )
        return subscription.close

    def subscribe_ticker(self, on_batch: OnTickerBatch) -> Unsubscribe:
        subscription = _StreamSubscription(label="ticker")

        def _on_payload(payload: Any):
            rows = payload if isinstance(payload, list) else [payload]
            batch = [t for t in (parse_ticker_row(row) for row in rows) if t is not None]
            if batch:
                on_batch(batch)

        subscription.tasks.append(
            asyncio.create_task(self._stream_loop(["!ticker@arr"], _on_payload, subscription), name="ticker-stream")
        )
        return subscription.close

    def _dispatch(self, raw: str, on_payload: Callable[[Any], None], subscription: _StreamSubscription):
        if not subscription.active:
            return
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            return
        if not isinstance(msg, dict) or "data" not in msg:
            # subscribe acks: {"result": null, "id": 1}
            return
        try:
            on_payload(msg["data"])
        except Exception:
            logger.exception("Stream callback failed stream=%s", msg.get("stream"))

    async def _stream_loop(
        self,
        streams: Iterable[str],
        on_payload: Callable[[Any], None],
        subscription: _StreamSubscription,
    ):
        streams = list(streams)
        reconnect_delay = self.reconnect_min_sec
        while subscription.active:
            connected_at: Optional[float] = None
            try:
                session = await self._get_session()
                async with session.ws_connect(self.ws_url, heartbeat=20) as ws:
                    connected_at = time.time()
                    await ws.send_str(
                        json.dumps({"method": "SUBSCRIBE", "params": streams, "id": next(self._req_ids)})
                    )
                    logger.info("Stream connected label=%s streams=%s", subscription.label, len(streams))
                    async for msg in ws:
                        if not subscription.active:
                            break
                        if msg.type == WSMsgType.TEXT:
                            self._dispatch(msg.data, on_payload, subscription)
                        elif msg.type == WSMsgType.ERROR:
                            logger.warning("Stream error label=%s err=%s", subscription.label, ws.exception())
                            break
                        elif msg.type in {WSMsgType.CLOSED, WSMsgType.CLOSING, WSMsgType.CLOSE}:
                            break
                    logger.info("Stream closed label=%s close_code=%s", subscription.label, ws.close_code)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Stream connection failed label=%s err=%s", subscription.label, e)

            if not subscription.active:
                break

            uptime = (time.time() - connected_at) if connected_at is not None else 0.0
            if uptime >= 30.0:
                reconnect_delay = self.reconnect_min_sec
            else:
                reconnect_delay = min(self.reconnect_max_sec, max(self.reconnect_min_sec, reconnect_delay * 1.6))
            wait_s = reconnect_delay + random.uniform(0.2, 1.5)
            logger.warning("Stream reconnect label=%s in %.1fs", subscription.label, wait_s)
            await asyncio.sleep(wait_s)
