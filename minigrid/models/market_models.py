import math
from typing import Any, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, field_validator

Interval = Literal[
    "1m", "3m", "5m", "15m", "30m",
    "1h", "2h", "4h", "6h", "8h", "12h",
    "1d", "3d", "1w", "1M",
]
INTERVALS = get_args(Interval)


def to_float(value: Any) -> float:
    """Numeric coercion used on every exchange-provided number: malformed input becomes 0.0."""
    if isinstance(value, bool):
        return float(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


class InstrumentMetadata(BaseModel):
    """
    Static exchange description of one tradable instrument.
    Replaced wholesale on a metadata reload, never patched.
    """
    model_config = ConfigDict(frozen=True, extra="allow")

    symbol: str
    price_precision: int = 0
    quantity_precision: int = 0
    base_asset: str = ""
    quote_asset: str = ""
    contract_type: str = ""
    status: str = "TRADING"


class Candle(BaseModel):
    """
    OHLCV aggregate for one instrument over one interval bucket.
    open_time (ms) is the key of the candle inside its series.
    """
    model_config = ConfigDict(frozen=True)

    symbol: str
    interval: Interval
    open_time: int
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    close: float = 0.0
    volume: float = 0.0
    close_time: Optional[int] = None
    quote_volume: float = 0.0
    trades: int = 0
    closed: bool = False

    @field_validator("open", "high", "low", "close", "volume", "quote_volume", mode="before")
    @classmethod
    def _coerce_number(cls, value: Any) -> float:
        return to_float(value)


class TickerSnapshot(BaseModel):
    """24h rolling ticker values for one instrument, as delivered by the ticker stream."""
    model_config = ConfigDict(frozen=True)

    symbol: str
    last_price: float = 0.0
    quote_volume: float = 0.0
    price_change_percent: float = 0.0

    @field_validator("last_price", "quote_volume", "price_change_percent", mode="before")
    @classmethod
    def _coerce_number(cls, value: Any) -> float:
        return to_float(value)
