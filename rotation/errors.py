"""Exception hierarchy shared by the engine components."""


class TradingError(Exception):
    """Base class for every error raised by the rotation engine."""


class ConfigError(TradingError):
    pass


class ExchangeError(TradingError):
    """Raised by exchange adapters for transport or API-level failures."""


class RateLimitError(ExchangeError):
    """Raised when the exchange keeps rate limiting after backoff is exhausted."""


class InsufficientCandlesError(TradingError):
    """Not enough candles to seed the long EMA."""

    def __init__(self, symbol: str, have: int, need: int):
        super().__init__(f"{symbol}: need {need} candles, have {have}")
        self.symbol = symbol
        self.have = have
        self.need = need


class InvalidTransitionError(TradingError):
    pass


class ExecutionError(TradingError):
    """Fatal failure of a single order execution unit."""

    def __init__(self, symbol: str, message: str):
        super().__init__(message)
        self.symbol = symbol


class InvalidQuantityError(ExecutionError):
    pass


class InsufficientBalanceError(ExecutionError):
    pass


class SlippageExceededError(ExecutionError):
    pass


class MarketOrderNotFilledError(ExecutionError):
    pass


class SymbolBusyError(ExecutionError):
    """Another execution for the same symbol is still in flight."""
