import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from pydantic import ValidationError

from minigrid.errors import ConfigurationError, OutOfOrderCandleError
from minigrid.models.alert_models import AlertLogEntry, AlertType
from minigrid.models.market_models import Candle, InstrumentMetadata, TickerSnapshot
from minigrid.models.settings_models import GridSettings
from minigrid.services.alerts import AlertDispatcher, AlertLog, build_alert_entry, crossed_levels, utc_now_iso
from minigrid.services.anomaly_detector import VolumeAnomalyDetector
from minigrid.services.candle_merge import CandleSeries, merge_candle
from minigrid.services.market_data import MarketDataPort, Unsubscribe
from minigrid.services.ranking import depends_on_metrics, rank
from minigrid.services.settings_service import SettingsStore
from minigrid.services.throttle import ThrottleLayer

logger = logging.getLogger(__name__)

SYMBOLS = "symbols"
CANDLES = "candles"
REALTIME_CANDLES = "realtime_candles"
VOLUMES = "volumes"
PRICE_CHANGE_PERCENTS = "price_change_percents"
ALERT_LOG = "alert_log"
SETTINGS = "settings"

STORE_EVENTS = frozenset({SYMBOLS, CANDLES, REALTIME_CANDLES, VOLUMES, PRICE_CHANGE_PERCENTS, ALERT_LOG, SETTINGS})


@dataclass(frozen=True)
class SeriesUpdate:
    symbol: str
    series: CandleSeries


class AggregationStore:
    """
    Single owner of all per-instrument market state.

    Startup loads exchange metadata, ranks the instruments, opens one combined
    kline subscription for (instruments x interval), fetches history for every
    instrument concurrently and opens the ticker stream.

    Every subscription is tagged with an epoch. Changing the interval bumps the
    epoch, so history results and stream callbacks issued for the previous
    interval are discarded on arrival.

    Consumers read through the properties below. Series are tuples and every
    map is replaced (never mutated) on change, so held references stay valid.
    """

    def __init__(
        self,
        market_data: MarketDataPort,
        settings_store: SettingsStore,
        alert_sink=None,
        history_limit: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.market_data = market_data
        self.settings_store = settings_store
        self.history_limit = max(1, int(history_limit))
        self.is_running = False

        self._settings: GridSettings = settings_store.load_grid_settings()
        self._metadata: Dict[str, InstrumentMetadata] = {}
        self._symbols: Tuple[str, ...] = ()
        self._series: Dict[str, CandleSeries] = {}
        self._slow_series: Dict[str, CandleSeries] = {}
        self._volumes: Dict[str, float] = {}
        self._price_change_percents: Dict[str, float] = {}
        self._alert_log = AlertLog(self._settings.alert_log)

        self._anomalies = VolumeAnomalyDetector()
        self._throttle = ThrottleLayer(self._on_throttled, clock=clock)
        self._dispatcher = AlertDispatcher(alert_sink)

        self._listeners: Dict[str, List[Callable[[Any], None]]] = defaultdict(list)
        self._select_listeners: List[Callable[[str], None]] = []

        self._epoch = 0
        self._live_seen: Set[str] = set()
        self._history_tasks: Set[asyncio.Task] = set()
        self._stream_unsubscribe: Optional[Unsubscribe] = None
        self._ticker_unsubscribe: Optional[Unsubscribe] = None

    # --- read API ---

    @property
    def settings(self) -> GridSettings:
        return self._settings

    @property
    def symbols(self) -> Tuple[str, ...]:
        return self._symbols

    @property
    def metadata(self) -> Mapping[str, InstrumentMetadata]:
        return MappingProxyType(self._metadata)

    @property
    def candles(self) -> Mapping[str, CandleSeries]:
        """Throttled series, for expensive consumers."""
        return MappingProxyType(self._slow_series)

    @property
    def realtime_candles(self) -> Mapping[str, CandleSeries]:
        """Unthrottled series, for cheap consumers such as last-price display."""
        return MappingProxyType(self._series)

    @property
    def volumes(self) -> Mapping[str, float]:
        return MappingProxyType(self._volumes)

    @property
    def price_change_percents(self) -> Mapping[str, float]:
        return MappingProxyType(self._price_change_percents)

    @property
    def alert_log(self) -> Tuple[AlertLogEntry, ...]:
        return self._alert_log.entries

    @property
    def epoch(self) -> int:
        return self._epoch

    def unseen_alert_count(self) -> int:
        return self._alert_log.unseen_count(self._settings.alert_log_last_seen_iso)

    def get_overview(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "epoch": self._epoch,
            "interval": self._settings.interval,
            "symbols": len(self._symbols),
            "series": len(self._series),
            "slow_series": len(self._slow_series),
            "history_in_flight": len(self._history_tasks),
            "throttle_gates": len(self._throttle),
            "alerts": len(self._alert_log),
        }

    # --- observers ---

    def listen(self, event: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        if event not in STORE_EVENTS:
            raise ConfigurationError(f"unknown store event {event!r}")
        self._listeners[event].append(callback)

        def _unlisten():
            try:
                self._listeners[event].remove(callback)
            except ValueError:
                pass

        return _unlisten

    def _emit(self, event: str, payload: Any):
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(payload)
            except Exception:
                logger.exception("Store listener failed event=%s", event)

    def on_symbol_select(self, callback: Callable[[str], None]) -> Callable[[], None]:
        self._select_listeners.append(callback)

        def _unlisten():
            if callback in self._select_listeners:
                self._select_listeners.remove(callback)

        return _unlisten

    def select_symbol(self, symbol: str):
        for callback in list(self._select_listeners):
            try:
                callback(symbol)
            except Exception:
                logger.exception("Symbol select listener failed symbol=%s", symbol)

    # --- lifecycle ---

    async def start(self):
        if self.is_running:
            return
        self.is_running = True
        await self._load_metadata()
        self._sort_symbols()
        self._throttle.rebuild(self._symbols, self._settings.throttle_delay)
        self._create_subscription()
        self._subscribe_ticker()
        logger.info(
            "🚀 Aggregation store online symbols=%s interval=%s throttle_ms=%s",
            len(self._symbols),
            self._settings.interval,
            self._settings.throttle_delay,
        )

    async def stop(self):
        if not self.is_running:
            return
        self.is_running = False
        # queued callbacks from the closed streams carry the old epoch
        self._epoch += 1
        tasks = self._teardown_subscription()
        unsubscribe = self._ticker_unsubscribe
        self._ticker_unsubscribe = None
        if unsubscribe is not None:
            try:
                unsubscribe()
            except Exception:
                logger.exception("Ticker unsubscribe failed")
        self._throttle.close()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._dispatcher.drain()
        logger.info("Aggregation store offline epoch=%s", self._epoch)

    async def restart(self):
        """Full reload: metadata, ranking, history and subscriptions."""
        await self.stop()
        await self.start()

    async def _load_metadata(self):
        try:
            instruments = await self.market_data.fetch_metadata()
        except Exception:
            logger.exception("Failed to load exchange metadata; instrument list is empty")
            instruments = []
        self._metadata = {meta.symbol: meta for meta in instruments}
        self._symbols = tuple(self._metadata.keys())

    def _sort_symbols(self):
        s = self._settings
        ordered = tuple(
            rank(self._symbols, s.sort_by, s.sort_direction, self._volumes, self._price_change_percents, self._metadata)
        )
        if ordered != self._symbols:
            self._symbols = ordered
            self._emit(SYMBOLS, ordered)

    # --- subscriptions ---

    def _teardown_subscription(self) -> List[asyncio.Task]:
        unsubscribe = self._stream_unsubscribe
        self._stream_unsubscribe = None
        if unsubscribe is not None:
            try:
                unsubscribe()
            except Exception:
                logger.exception("Kline unsubscribe failed epoch=%s", self._epoch)
        tasks = list(self._history_tasks)
        for task in tasks:
            if not task.done():
                task.cancel()
        self._history_tasks.clear()
        return tasks

    def _create_subscription(self):
        self._teardown_subscription()
        self._epoch += 1
        epoch = self._epoch
        interval = self._settings.interval
        self._series = {}
        self._slow_series = {}
        self._live_seen = set()
        self._anomalies.reset()

        symbols = list(self._symbols)
        for symbol in symbols:
            task = asyncio.create_task(self._load_history(symbol, interval, epoch), name=f"history-{symbol}")
            self._history_tasks.add(task)
            task.add_done_callback(self._history_tasks.discard)

        if symbols:
            pairs = [(symbol, interval) for symbol in symbols]
            try:
                self._stream_unsubscribe = self.market_data.subscribe_stream(
                    pairs, lambda candle: self._on_candle(candle, epoch)
                )
            except Exception:
                logger.exception("Kline subscription failed epoch=%s interval=%s", epoch, interval)
        logger.info("Subscription created epoch=%s interval=%s symbols=%s", epoch, interval, len(symbols))

    def _subscribe_ticker(self):
        if self._ticker_unsubscribe is not None:
            return
        try:
            self._ticker_unsubscribe = self.market_data.subscribe_ticker(self._on_ticker_batch)
        except Exception:
            logger.exception("Ticker subscription failed")

    async def _load_history(self, symbol: str, interval: str, epoch: int):
        try:
            candles = await self.market_data.fetch_history(symbol, interval, self.history_limit)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("History fetch failed symbol=%s interval=%s err=%s", symbol, interval, e)
            return
        self.apply_history(symbol, candles, epoch)

    def apply_history(self, symbol: str, candles: Iterable[Candle], epoch: int) -> bool:
        """
        Install a historical snapshot. Dropped when issued under an older epoch
        or when the instrument already received a live update in this epoch.
        """
        if epoch != self._epoch:
            logger.debug("Discarding stale history symbol=%s epoch=%s current=%s", symbol, epoch, self._epoch)
            return False
        if symbol not in self._metadata:
            return False
        if symbol in self._live_seen:
            logger.debug("Discarding history superseded by live data symbol=%s", symbol)
            return False
        interval = self._settings.interval
        rows = sorted((c for c in candles if c.interval == interval), key=lambda c: c.open_time)
        # duplicate open times collapse to the last row
        series = tuple({c.open_time: c for c in rows}.values())
        if not series:
            return False
        self._set_live(symbol, series)
        self._throttle.notify_key(symbol, series)
        return True

    # --- streamed updates ---

    def _on_candle(self, candle: Candle, epoch: int):
        if epoch != self._epoch:
            return
        symbol = candle.symbol
        if symbol not in self._metadata or candle.interval != self._settings.interval:
            return

        series = self._series.get(symbol, ())
        previous_close = series[-1].close if series else None
        try:
            merged = merge_candle(series, candle)
        except OutOfOrderCandleError as e:
            logger.warning("Ignoring out-of-order candle: %s", e)
            return

        self._live_seen.add(symbol)
        self._set_live(symbol, merged)
        self._throttle.notify_key(symbol, merged)
        self._check_volume_anomaly(symbol, merged)
        self._check_price_levels(symbol, previous_close, merged[-1].close)

    def _set_live(self, symbol: str, series: CandleSeries):
        self._series = {**self._series, symbol: series}
        self._emit(REALTIME_CANDLES, SeriesUpdate(symbol, series))

    def _on_throttled(self, symbol: str, series: CandleSeries):
        self._slow_series = {**self._slow_series, symbol: series}
        self._emit(CANDLES, SeriesUpdate(symbol, series))

    def _on_ticker_batch(self, batch: Iterable[TickerSnapshot]):
        if not self.is_running:
            return
        volumes = dict(self._volumes)
        changes = dict(self._price_change_percents)
        count = 0
        for ticker in batch:
            volumes[ticker.symbol] = ticker.quote_volume
            changes[ticker.symbol] = ticker.price_change_percent
            count += 1
        if not count:
            return
        self._volumes = volumes
        self._price_change_percents = changes
        self._emit(VOLUMES, self.volumes)
        self._emit(PRICE_CHANGE_PERCENTS, self.price_change_percents)
        if depends_on_metrics(self._settings.sort_by):
            self._sort_symbols()

    # --- alerts ---

    def _check_volume_anomaly(self, symbol: str, series: CandleSeries):
        s = self._settings
        if not VolumeAnomalyDetector.is_enabled(s.volume_anomaly_ratio):
            return
        window = s.volume_anomaly_candles_size
        preceding = series[:-1] if window <= 0 else series[-(window + 1):-1]
        fired = self._anomalies.check(
            symbol,
            series[-1],
            [c.volume for c in preceding],
            s.volume_anomaly_ratio,
            window,
        )
        if fired:
            self.trigger_alert(AlertType.VOLUME_ANOMALY, symbol)

    def _check_price_levels(self, symbol: str, previous_close: Optional[float], close: float):
        levels = self._settings.symbol_alerts.get(symbol)
        if not levels:
            return
        hits = crossed_levels(previous_close, close, levels)
        if not hits:
            return
        hit_levels = {level for _, level in hits}
        remaining = [level for level in levels if level not in hit_levels]
        alerts = dict(self._settings.symbol_alerts)
        if remaining:
            alerts[symbol] = remaining
        else:
            alerts.pop(symbol, None)
        self.update_settings(symbol_alerts=alerts)
        for alert_type, _level in hits:
            self.trigger_alert(alert_type, symbol)

    def trigger_alert(self, alert_type: AlertType, symbol: str) -> AlertLogEntry:
        entry = build_alert_entry(alert_type, symbol, self._series.get(symbol, ()))
        log = self._alert_log.push(entry)
        self._settings = self._settings.model_copy(update={"alert_log": list(log)})
        self.settings_store.save_field(self._settings, "alert_log")
        logger.info(
            "Alert triggered type=%s symbol=%s price=%s volume=%s",
            entry.type.value,
            symbol,
            entry.price,
            entry.volume,
        )
        self._emit(ALERT_LOG, log)
        self._dispatcher.dispatch(entry)
        return entry

    def mark_alerts_seen(self) -> GridSettings:
        return self.update_settings(alert_log_last_seen_iso=utc_now_iso())

    def set_symbol_alerts(self, symbol: str, levels: Iterable[float]) -> GridSettings:
        alerts = dict(self._settings.symbol_alerts)
        levels = list(levels)
        if levels:
            alerts[symbol] = levels
        else:
            alerts.pop(symbol, None)
        return self.update_settings(symbol_alerts=alerts)

    # --- settings ---

    def update_settings(self, **changes: Any) -> GridSettings:
        """
        Validate, persist and apply setting changes. Keys may be field names or
        persisted key names. Raises ConfigurationError on unknown keys or
        invalid values.
        """
        normalized: Dict[str, Any] = {}
        for key, value in changes.items():
            name = GridSettings.field_name(key)
            if name is None:
                raise ConfigurationError(f"unknown setting {key!r}")
            normalized[name] = value
        if not normalized:
            return self._settings

        previous = self._settings
        try:
            updated = GridSettings.model_validate({**previous.model_dump(), **normalized})
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e

        changed = {name for name in normalized if getattr(updated, name) != getattr(previous, name)}
        if not changed:
            return previous

        self._settings = updated
        for name in sorted(changed):
            self.settings_store.save_field(updated, name)
        logger.info("Settings updated fields=%s", sorted(changed))

        if "alert_log" in changed:
            self._alert_log = AlertLog(updated.alert_log)
            self._emit(ALERT_LOG, self._alert_log.entries)
        self._emit(SETTINGS, updated)

        if changed & {"interval", "throttle_delay"}:
            self._throttle.rebuild(self._symbols, updated.throttle_delay)
        if "interval" in changed and self.is_running:
            self._create_subscription()
        if changed & {"sort_by", "sort_direction"}:
            self._sort_symbols()
        return updated
