class GridError(Exception):
    """Base class for errors raised by the grid core."""


class ConfigurationError(GridError):
    """
    Raised for programmer/configuration mistakes: an unknown ranking criterion
    or a settings update that does not validate. Not meant to be caught and ignored.
    """


class OutOfOrderCandleError(GridError, ValueError):
    """An update whose open time is older than the last candle of the series."""

    def __init__(self, symbol: str, open_time: int, last_open_time: int):
        self.symbol = symbol
        self.open_time = open_time
        self.last_open_time = last_open_time
        super().__init__(
            f"candle for {symbol} opened at {open_time} is older than last stored candle {last_open_time}"
        )
