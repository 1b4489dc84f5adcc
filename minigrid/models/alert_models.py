from enum import Enum

from pydantic import BaseModel, ConfigDict


class AlertType(str, Enum):
    PRICE_UP = "PRICE_UP"
    PRICE_DOWN = "PRICE_DOWN"
    VOLUME_ANOMALY = "VOLUME_ANOMALY"


class AlertLogEntry(BaseModel):
    """
    One triggered alert. price/volume are the latest live values of the
    instrument at trigger time; timestamp is an ISO-8601 UTC string.
    The same shape is handed to alert sinks.
    """
    model_config = ConfigDict(frozen=True)

    type: AlertType
    symbol: str
    price: float = 0.0
    volume: float = 0.0
    timestamp: str
