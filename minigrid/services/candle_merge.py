from typing import Sequence, Tuple

from minigrid.errors import OutOfOrderCandleError
from minigrid.models.market_models import Candle

CandleSeries = Tuple[Candle, ...]


def merge_candle(series: Sequence[Candle], update: Candle) -> CandleSeries:
    """
    Merge one streamed candle into a series ordered by open_time.

    - empty series -> (update,)
    - same open_time as the last candle -> last candle replaced field-wise,
      every field set on ``update`` wins
    - newer open_time -> appended

    Always returns a new tuple, the input is never mutated, so a consumer
    holding the previous series keeps a consistent snapshot.
    Raises OutOfOrderCandleError when ``update`` is older than the last candle.
    """
    if not series:
        return (update,)

    last = series[-1]
    if update.open_time == last.open_time:
        replaced = last.model_copy(update=update.model_dump(exclude_unset=True))
        return tuple(series[:-1]) + (replaced,)

    if update.open_time > last.open_time:
        return tuple(series) + (update,)

    raise OutOfOrderCandleError(update.symbol, update.open_time, last.open_time)
