"""Signal engine: fetch candles per universe symbol, score them, persist one Signal per asset."""
import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from .config import StrategySettings
from .errors import InsufficientCandlesError
from .exchange import ExchangeAdapter
from .indicators import IndicatorBundle, compute_indicators
from .logging_setup import component_logger
from .models import Candle, Signal

CANDLE_LIMIT = 50

log = component_logger("signals")


@dataclass
class PollResult:
    signals: List[Signal] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return len(self.signals)


class SignalEngine:
    def __init__(self, exchange: ExchangeAdapter, ledger, settings: StrategySettings):
        self.exchange = exchange
        self.ledger = ledger
        self.settings = settings

    async def analyze(self, symbol: str) -> Tuple[IndicatorBundle, List[Candle]]:
        """Fetch cadence candles for ``symbol`` and compute its indicators.

        Raises:
            InsufficientCandlesError: not enough history
            ExchangeError: candle fetch failed
        """
        candles = await self.exchange.get_ohlcv(symbol, self.settings.cadence, CANDLE_LIMIT)
        bundle = compute_indicators(
            candles,
            symbol=symbol,
            ema_short_period=self.settings.ema_short,
            ema_long_period=self.settings.ema_long,
        )
        return bundle, candles

    async def poll(self) -> PollResult:
        """Score every universe symbol; failures skip the symbol."""
        result = PollResult()
        for symbol in self.settings.universe:
            try:
                bundle, _ = await self.analyze(symbol)
            except InsufficientCandlesError as e:
                log.warning(f"Skipping signal | symbol={symbol} reason={e}")
                result.failures[symbol] = str(e)
                continue
            except Exception as e:
                log.error(f"Signal computation failed | symbol={symbol} error={e}")
                result.failures[symbol] = str(e)
                continue

            signal = Signal(
                symbol=symbol,
                ema12=bundle.ema_short,
                ema26=bundle.ema_long,
                rsi=bundle.rsi,
                score=bundle.score,
                cadence=self.settings.cadence,
            )
            try:
                await asyncio.to_thread(self.ledger.signals.create, signal)
            except Exception as e:
                log.warning(f"Signal persist failed | symbol={symbol} error={e}")
            result.signals.append(signal)
            log.info(
                f"Signal generated | symbol={symbol} ema12={bundle.ema_short:.4f} "
                f"ema26={bundle.ema_long:.4f} rsi={bundle.rsi:.2f} score={bundle.score:.6f}"
            )
        log.info(f"Signal poll complete | ok={result.success_count} failed={len(result.failures)}")
        return result
