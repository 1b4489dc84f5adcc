from enum import Enum, IntEnum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from minigrid.models.alert_models import AlertLogEntry
from minigrid.models.market_models import Interval

ChartType = Literal["candlestick", "line"]


class SortBy(str, Enum):
    NONE = "none"
    ALPHABETICAL = "alphabetically"
    VOLUME = "volume"
    VOLUME_CHANGE = "volume_change"


class SortDirection(IntEnum):
    ASC = 1
    DESC = -1


class GridSettings(BaseModel):
    """
    Every user-facing setting of the grid. Field aliases are the persisted key
    names, one settings-store key per field.
    Display fields (candles_length, max_charts_length, grid_columns, chart_type,
    chart_height) are passed through to consumers and never interpreted by the core.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    interval: Interval = Field("1m", alias="interval")
    candles_length: int = Field(200, alias="candlesLength", ge=1)
    max_charts_length: Optional[int] = Field(None, alias="maxChartsLength", ge=1)
    throttle_delay: int = Field(1000, alias="throttleDelay", ge=0)
    grid_columns: int = Field(4, alias="gridColumns", ge=1)
    chart_type: ChartType = Field("candlestick", alias="chartType")
    chart_height: int = Field(200, alias="chartHeight", ge=1)
    symbol_alerts: Dict[str, List[float]] = Field(default_factory=dict, alias="symbolAlerts")
    alert_log: List[AlertLogEntry] = Field(default_factory=list, alias="alertLog")
    sort_by: SortBy = Field(SortBy.NONE, alias="sortBy")
    sort_direction: SortDirection = Field(SortDirection.DESC, alias="sortDirection")
    alert_log_last_seen_iso: Optional[str] = Field(None, alias="alertLogLastSeenISO")
    volume_anomaly_ratio: Optional[float] = Field(None, alias="volumeAnomalyAlertsRatio")
    volume_anomaly_candles_size: int = Field(0, alias="volumeAnomalyAlertsCandlesSize")

    @classmethod
    def storage_keys(cls) -> Dict[str, str]:
        """field name -> persisted key"""
        return {name: field.alias or name for name, field in cls.model_fields.items()}

    @classmethod
    def field_name(cls, key: str) -> Optional[str]:
        """Accepts a field name or a persisted key."""
        if key in cls.model_fields:
            return key
        for name, alias in cls.storage_keys().items():
            if alias == key:
                return name
        return None

    def storage_value(self, field_name: str) -> Any:
        return self.model_dump(mode="json", include={field_name})[field_name]

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude={"alert_log"})
