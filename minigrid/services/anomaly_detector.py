import math
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from minigrid.models.market_models import Candle, to_float

AnomalyKey = Tuple[str, int]


class VolumeAnomalyDetector:
    """
    Flags a candle whose volume exceeds ``ratio_threshold`` times the average
    volume of the preceding candles.

    Keeps, per instrument, the (interval, open_time) key of the last flagged
    candle so that the still-open candle fires once, however many partial
    updates it receives afterwards.
    """

    def __init__(self):
        self._last_fired: Dict[str, AnomalyKey] = {}

    @staticmethod
    def is_enabled(ratio_threshold) -> bool:
        if isinstance(ratio_threshold, bool) or ratio_threshold is None:
            return False
        try:
            ratio = float(ratio_threshold)
        except (TypeError, ValueError):
            return False
        return math.isfinite(ratio) and ratio > 0

    @staticmethod
    def average_volume(recent_volumes: Sequence, window_size: int) -> Optional[float]:
        """Mean of the last ``window_size`` volumes (all of them when window_size <= 0)."""
        volumes = list(recent_volumes)
        if window_size and window_size > 0:
            volumes = volumes[-int(window_size):]
        if not volumes:
            return None
        return float(np.mean(np.fromiter((to_float(v) for v in volumes), dtype=float, count=len(volumes))))

    def check(
        self,
        symbol: str,
        candle: Candle,
        recent_volumes: Sequence,
        ratio_threshold,
        window_size: int,
    ) -> bool:
        if not self.is_enabled(ratio_threshold):
            return False

        key: AnomalyKey = (candle.interval, candle.open_time)
        if self._last_fired.get(symbol) == key:
            return False

        avg = self.average_volume(recent_volumes, window_size)
        if avg is None:
            return False

        if avg * float(ratio_threshold) < to_float(candle.volume):
            self._last_fired[symbol] = key
            return True
        return False

    def last_fired(self, symbol: str) -> Optional[AnomalyKey]:
        return self._last_fired.get(symbol)

    def reset(self):
        self._last_fired.clear()
