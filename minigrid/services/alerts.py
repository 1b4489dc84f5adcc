import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from minigrid.models.alert_models import AlertLogEntry, AlertType
from minigrid.models.market_models import Candle

logger = logging.getLogger(__name__)

MAX_LOG_SIZE = 100


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_alert_entry(alert_type: AlertType, symbol: str, series: Sequence[Candle]) -> AlertLogEntry:
    """Snapshot of the latest live price/volume (0/0 before the first candle)."""
    last = series[-1] if series else None
    return AlertLogEntry(
        type=AlertType(alert_type),
        symbol=symbol,
        price=last.close if last is not None else 0.0,
        volume=last.volume if last is not None else 0.0,
        timestamp=utc_now_iso(),
    )


class AlertLog:
    """Most-recent-first, capped at MAX_LOG_SIZE. Every insert produces a new tuple."""

    def __init__(self, entries: Iterable[AlertLogEntry] = (), max_size: int = MAX_LOG_SIZE):
        self.max_size = max_size
        self._entries: Tuple[AlertLogEntry, ...] = tuple(entries)[:max_size]

    @property
    def entries(self) -> Tuple[AlertLogEntry, ...]:
        return self._entries

    def push(self, entry: AlertLogEntry) -> Tuple[AlertLogEntry, ...]:
        self._entries = ((entry,) + self._entries)[: self.max_size]
        return self._entries

    def unseen_count(self, last_seen_iso: Optional[str]) -> int:
        if not last_seen_iso:
            return len(self._entries)
        try:
            last_seen = datetime.fromisoformat(last_seen_iso)
        except ValueError:
            return len(self._entries)
        count = 0
        for entry in self._entries:
            try:
                if datetime.fromisoformat(entry.timestamp) > last_seen:
                    count += 1
            except ValueError:
                continue
        return count

    def __len__(self) -> int:
        return len(self._entries)


def crossed_levels(
    previous_close: Optional[float],
    close: float,
    levels: Iterable[float],
) -> List[Tuple[AlertType, float]]:
    """
    Price levels crossed while moving from previous_close to close.
    Upward: previous < level <= close. Downward: previous > level >= close.
    """
    if previous_close is None or previous_close == close:
        return []
    hits: List[Tuple[AlertType, float]] = []
    for level in levels:
        if previous_close < level <= close:
            hits.append((AlertType.PRICE_UP, level))
        elif previous_close > level >= close:
            hits.append((AlertType.PRICE_DOWN, level))
    return hits


class AlertDispatcher:
    """
    Hands alert entries to the external sink without waiting for delivery.
    Coroutine sinks run as background tasks; their failures are logged.
    """

    def __init__(self, sink=None):
        self.sink = sink
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, entry: AlertLogEntry):
        if self.sink is None:
            return
        try:
            result = self.sink.notify(entry)
        except Exception:
            logger.exception("Alert sink failed type=%s symbol=%s", entry.type.value, entry.symbol)
            return
        if not inspect.isawaitable(result):
            return
        try:
            task = asyncio.ensure_future(result)
        except RuntimeError:
            logger.warning("No running loop; dropping alert delivery type=%s", entry.type.value)
            if inspect.iscoroutine(result):
                result.close()
            return
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Alert delivery failed: %s", exc)

    async def drain(self):
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
