"""
Trend and momentum indicators.

Pure functions over close prices (oldest first). No I/O, so the live signal
engine and any offline replay score candles identically.

Examples:
    >>> from decimal import Decimal
    >>> closes = [Decimal(100 + i) for i in range(30)]
    >>> ema(closes, 12) > ema(closes, 26)
    True
    >>> rsi(closes, 14)
    Decimal('100')
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence

from .errors import InsufficientCandlesError
from .models import Candle

RSI_NEUTRAL = Decimal("50")
RSI_BONUS_LOW = Decimal("45")
RSI_BONUS_HIGH = Decimal("55")
RSI_BONUS = Decimal("1.05")


@dataclass
class IndicatorBundle:
    """Indicator values for the newest candle of one asset."""

    ema_short: Decimal
    ema_long: Decimal
    rsi: Decimal
    score: Decimal
    last_close: Decimal

    @property
    def trend_up(self) -> bool:
        return self.ema_short > self.ema_long


def ema_series(values: Sequence[Decimal], period: int) -> List[Decimal]:
    """EMA seeded with the SMA of the first ``period`` values, then ``k = 2/(period+1)``.

    The returned list starts at index ``period - 1`` of the input.
    """
    if period <= 0 or len(values) < period:
        return []
    k = Decimal(2) / Decimal(period + 1)
    current = sum(values[:period], Decimal("0")) / Decimal(period)
    out = [current]
    for v in values[period:]:
        current = (v - current) * k + current
        out.append(current)
    return out


def ema(values: Sequence[Decimal], period: int) -> Optional[Decimal]:
    series = ema_series(values, period)
    return series[-1] if series else None


def rsi(values: Sequence[Decimal], period: int = 14) -> Optional[Decimal]:
    """Wilder RSI: first averages are plain means of the first ``period`` moves, then recursive smoothing."""
    if len(values) < period + 1:
        return None
    gains = []
    losses = []
    for prev, cur in zip(values, values[1:]):
        change = cur - prev
        gains.append(change if change > 0 else Decimal("0"))
        losses.append(-change if change < 0 else Decimal("0"))

    n = Decimal(period)
    avg_gain = sum(gains[:period], Decimal("0")) / n
    avg_loss = sum(losses[:period], Decimal("0")) / n
    for g, l in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (n - 1) + g) / n
        avg_loss = (avg_loss * (n - 1) + l) / n

    if avg_loss == 0:
        return Decimal("100")
    rs = avg_gain / avg_loss
    return Decimal("100") - Decimal("100") / (1 + rs)


def score(ema_short: Decimal, ema_long: Decimal, rsi_value: Decimal) -> Decimal:
    """Trend ratio, nudged up 5% when RSI sits in the neutral band."""
    bonus = RSI_BONUS if RSI_BONUS_LOW <= rsi_value <= RSI_BONUS_HIGH else Decimal("1")
    return (ema_short / ema_long) * bonus


def compute_indicators(
    candles: Sequence[Candle],
    symbol: str = "",
    ema_short_period: int = 12,
    ema_long_period: int = 26,
    rsi_period: int = 14,
) -> IndicatorBundle:
    """Compute the indicator bundle for the newest candle.

    Raises:
        InsufficientCandlesError: fewer candles than the long EMA period
    """
    if len(candles) < ema_long_period:
        raise InsufficientCandlesError(symbol, len(candles), ema_long_period)

    closes = [c.close for c in candles]
    short = ema(closes, ema_short_period)
    long_ = ema(closes, ema_long_period)
    rsi_value = rsi(closes, rsi_period)
    if rsi_value is None:
        rsi_value = RSI_NEUTRAL
    return IndicatorBundle(
        ema_short=short,
        ema_long=long_,
        rsi=rsi_value,
        score=score(short, long_, rsi_value),
        last_close=closes[-1],
    )


def lookback_return_pct(candles: Sequence[Candle], periods: int) -> Decimal:
    """Absolute % change between the newest close and the close ``periods`` candles earlier."""
    if not candles:
        return Decimal("0")
    ref = candles[max(0, len(candles) - 1 - periods)].close
    if ref == 0:
        return Decimal("0")
    return abs(candles[-1].close - ref) / ref * 100
