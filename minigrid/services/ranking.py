from typing import Any, List, Mapping, Sequence, Union

from minigrid.errors import ConfigurationError
from minigrid.models.market_models import to_float
from minigrid.models.settings_models import SortBy, SortDirection


def _coerce_criterion(criterion: Union[SortBy, str]) -> SortBy:
    try:
        return SortBy(criterion)
    except ValueError:
        raise ConfigurationError(f"sortBy {criterion!r} is not supported") from None


def _coerce_direction(direction: Union[SortDirection, int]) -> SortDirection:
    try:
        return SortDirection(int(direction))
    except (TypeError, ValueError):
        raise ConfigurationError(f"sortDirection {direction!r} is not supported") from None


def rank(
    symbols: Sequence[str],
    criterion: Union[SortBy, str],
    direction: Union[SortDirection, int],
    volumes: Mapping[str, Any],
    price_change_percents: Mapping[str, Any],
    metadata: Mapping[str, Any],
) -> List[str]:
    """
    Order instrument ids by the selected criterion.

    none            -> metadata load order, reversed when descending
    alphabetically  -> by id
    volume          -> by quote volume (missing/non-numeric -> 0)
    volume_change   -> by 24h price change percent (missing/non-numeric -> 0)

    Metric sort keys end with the id, so ordering is total and descending is
    exactly the reverse of ascending.
    """
    criterion = _coerce_criterion(criterion)
    direction = _coerce_direction(direction)
    descending = direction == SortDirection.DESC

    if criterion == SortBy.NONE:
        ordered = list(metadata.keys())
        if descending:
            ordered.reverse()
        return ordered

    if criterion == SortBy.ALPHABETICAL:
        return sorted(symbols, reverse=descending)

    values = volumes if criterion == SortBy.VOLUME else price_change_percents
    return sorted(
        symbols,
        key=lambda symbol: (to_float(values.get(symbol)), symbol),
        reverse=descending,
    )


def depends_on_metrics(criterion: Union[SortBy, str]) -> bool:
    return _coerce_criterion(criterion) in (SortBy.VOLUME, SortBy.VOLUME_CHANGE)
