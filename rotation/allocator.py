"""
Portfolio allocator.

Turns ranked signals into buy/sell decisions once per cycle:

    1. score every universe symbol, apply the entry filter and volatility pause
    2. rank by score, take the top ``slots`` as the target set
    3. risk exits (profit target / stop loss) on every open position
    4. rebalance exits for held symbols outside the target set
    5. sized buys for target symbols not held, not pending, not cooling down

The allocator owns an explicit :class:`AllocatorState` (enabled flag and
cooldown map). It is single-writer: only the evaluation worker and the
risk-check loop mutate it, and both run on the same event loop.
"""

import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .config import StrategySettings
from .exchange import ExchangeAdapter, LotSizeCache, round_to_lot_size
from .indicators import IndicatorBundle, lookback_return_pct
from .logging_setup import component_logger
from .models import LotSizeInfo, OpenOrder, Position, Side, TradeDecision
from .signals import SignalEngine

log = component_logger("allocator")

NAV_KEY = "NAV"
CASH_BUFFER_FRACTION = Decimal("0.30")
HIGH_VOLATILITY_MOVE_PCT = Decimal("10")
FEE_MARGIN = Decimal("1.1")


@dataclass
class AllocatorState:
    """Mutable allocator state: strategy switch and per-symbol re-entry cooldowns."""

    enabled: bool = True
    cooldowns: Dict[str, int] = field(default_factory=dict)

    def in_cooldown(self, symbol: str) -> bool:
        return self.cooldowns.get(symbol, 0) > 0

    def set_cooldown(self, symbol: str, cycles: int) -> None:
        if cycles > 0:
            self.cooldowns[symbol] = cycles

    def tick(self) -> None:
        """Advance one cycle: decrement every cooldown, drop the ones that reach zero."""
        for symbol in list(self.cooldowns):
            remaining = self.cooldowns[symbol] - 1
            if remaining > 0:
                self.cooldowns[symbol] = remaining
            else:
                del self.cooldowns[symbol]


@dataclass
class SizingResult:
    quantity: Decimal
    allocation: Decimal
    raw_quantity: Decimal = Decimal("0")
    reason: str = ""


def size_order(capital: Decimal, price: Decimal, settings: StrategySettings, lot: LotSizeInfo) -> SizingResult:
    """Size a buy from ``capital`` (the cash still available this cycle).

    allocation = capital * MAX_ALLOC_FRACTION; the quantity is floored to the
    lot increment and rejected (quantity 0) below the exchange minimum or
    when its value drops under MIN_ORDER_USD.
    """
    allocation = capital * settings.max_alloc_fraction
    if allocation < settings.min_order_usd:
        return SizingResult(Decimal("0"), allocation, reason=f"allocation {allocation:.2f} below min order {settings.min_order_usd}")
    if price <= 0:
        return SizingResult(Decimal("0"), allocation, reason="non-positive price")

    raw = allocation / price
    qty = round_to_lot_size(raw, lot)
    if qty < lot.min_order_size:
        return SizingResult(Decimal("0"), allocation, raw, reason=f"quantity {qty} below exchange minimum {lot.min_order_size}")
    if qty * price < settings.min_order_usd:
        return SizingResult(Decimal("0"), allocation, raw, reason=f"order value {qty * price:.2f} below min order {settings.min_order_usd}")
    return SizingResult(qty, allocation, raw)


@dataclass
class RiskThresholds:
    profit: Decimal
    loss: Decimal
    profit_enabled: bool
    loss_enabled: bool


def risk_thresholds(entry_value: Decimal, settings: StrategySettings, volatility_multiplier: Decimal = Decimal("1")) -> RiskThresholds:
    """Profit and loss thresholds in quote currency for a position of ``entry_value``.

    The profit threshold never drops below the cost of a taker round trip plus
    PROFIT_FEE_BUFFER_PCT; the loss threshold widens by the volatility multiplier.
    """
    fee_floor_pct = (settings.taker_fee_pct * 2 + settings.profit_fee_buffer_pct / 100) * 100
    profit_pct = max(settings.min_profit_pct, fee_floor_pct)
    profit = max(entry_value * profit_pct / 100, settings.min_profit_usd)
    loss = max(entry_value * settings.max_loss_pct * volatility_multiplier / 100, settings.max_loss_usd)
    return RiskThresholds(
        profit=profit,
        loss=loss,
        profit_enabled=settings.min_profit_pct > 0 or settings.min_profit_usd > 0,
        loss_enabled=settings.max_loss_pct > 0 or settings.max_loss_usd > 0,
    )


def risk_exit_reason(position: Position, price: Decimal, settings: StrategySettings, volatility_multiplier: Decimal = Decimal("1")) -> Optional[str]:
    """Return ``"profit_target"``, ``"stop_loss"`` or None for one open position at ``price``."""
    entry_value = position.quantity * position.entry_price
    value = position.quantity * price
    profit = value - entry_value
    t = risk_thresholds(entry_value, settings, volatility_multiplier)

    if t.profit_enabled and profit >= t.profit:
        est_fees = entry_value * settings.taker_fee_pct + value * settings.taker_fee_pct
        if profit - est_fees > 0 or profit >= t.profit * FEE_MARGIN:
            return "profit_target"
        log.debug(f"Profit threshold met but fees exceed profit | symbol={position.symbol} profit={profit:.4f} fees={est_fees:.4f}")

    if t.loss_enabled and profit <= -t.loss:
        return "stop_loss"
    return None


class PortfolioAllocator:
    def __init__(
        self,
        exchange: ExchangeAdapter,
        ledger,
        signal_engine: SignalEngine,
        settings: StrategySettings,
        *,
        bot_id: str,
        quote_currency: str = "USD",
        lot_sizes: Optional[LotSizeCache] = None,
        state: Optional[AllocatorState] = None,
        busy_symbols: Optional[Callable[[], Iterable[str]]] = None,
    ):
        self.exchange = exchange
        self.ledger = ledger
        self.signal_engine = signal_engine
        self.settings = settings
        self.bot_id = bot_id
        self.quote_currency = quote_currency
        self.lot_sizes = lot_sizes or LotSizeCache(exchange)
        self.state = state or AllocatorState()
        self.busy_symbols = busy_symbols or (lambda: ())
        self.last_reasons: List[str] = []

    # --- control surface ---
    def toggle(self, enabled: bool) -> None:
        self.state.enabled = enabled
        log.info(f"Strategy {'enabled' if enabled else 'disabled'}")

    def is_enabled(self) -> bool:
        return self.state.enabled

    def clear_cooldown(self, symbol: str) -> None:
        self.state.cooldowns.pop(symbol, None)

    # --- helpers ---
    async def _nav(self) -> Decimal:
        metric = await asyncio.to_thread(self.ledger.metrics.find_latest, NAV_KEY)
        return metric.value if metric else Decimal("0")

    async def _open_positions(self) -> List[Position]:
        return await asyncio.to_thread(self.ledger.positions.find_open, self.bot_id)

    async def _open_orders(self) -> Optional[List[OpenOrder]]:
        try:
            return await self.exchange.get_open_orders()
        except Exception as e:
            log.warning(f"Could not fetch open orders | error={e}")
            return None

    def _volatility_lookback(self) -> int:
        return max(1, 24 // self.settings.cadence_hours)

    async def rank_signals(self) -> List[Tuple[str, IndicatorBundle]]:
        """Score the universe and return (symbol, bundle) pairs passing the entry filter, best first."""
        s = self.settings
        passing = []
        for symbol in s.universe:
            try:
                bundle, candles = await self.signal_engine.analyze(symbol)
            except Exception as e:
                log.warning(f"Skipping symbol | symbol={symbol} error={e}")
                continue

            move = lookback_return_pct(candles, self._volatility_lookback())
            if move > s.volatility_pause_pct:
                log.info(f"Volatility pause | symbol={symbol} return_24h={move:.2f}% limit={s.volatility_pause_pct}%")
                continue
            if bundle.trend_up and s.rsi_low <= bundle.rsi <= s.rsi_high:
                passing.append((symbol, bundle))
            else:
                log.debug(f"Entry filter rejected | symbol={symbol} ema12={bundle.ema_short:.4f} ema26={bundle.ema_long:.4f} rsi={bundle.rsi:.2f}")
        passing.sort(key=lambda item: item[1].score, reverse=True)
        return passing

    async def _volatility_multiplier(self, symbol: str, price: Decimal) -> Decimal:
        try:
            candles = await self.exchange.get_ohlcv(symbol, "1d", 2)
        except Exception as e:
            log.debug(f"Could not calculate volatility, using default | symbol={symbol} error={e}")
            return Decimal("1")
        if len(candles) < 2 or candles[0].close == 0:
            return Decimal("1")
        move = abs(price - candles[0].close) / candles[0].close * 100
        return self.settings.volatility_adjustment_factor if move > HIGH_VOLATILITY_MOVE_PCT else Decimal("1")

    async def _risk_exits(self, positions: List[Position], skip: Set[str]) -> List[TradeDecision]:
        decisions = []
        for pos in positions:
            if pos.symbol in skip:
                continue
            try:
                ticker = await self.exchange.get_ticker(pos.symbol)
                price = ticker.price
                if pos.quantity * price < self.settings.min_position_value_for_exit:
                    log.debug(f"Skipping exit check for small position | symbol={pos.symbol} value={pos.quantity * price:.4f}")
                    continue
                multiplier = await self._volatility_multiplier(pos.symbol, price)
                reason = risk_exit_reason(pos, price, self.settings, multiplier)
            except Exception as e:
                log.warning(f"Error checking risk thresholds | symbol={pos.symbol} error={e}")
                continue
            if reason:
                profit = pos.quantity * (price - pos.entry_price)
                log.info(
                    f"Risk exit | symbol={pos.symbol} reason={reason} entry={pos.entry_price} "
                    f"price={price} qty={pos.quantity} profit={profit:.4f} vol_mult={multiplier}"
                )
                decisions.append(TradeDecision(pos.symbol, Side.SELL, pos.quantity, reason))
        return decisions

    async def _available_cash(self, nav: Decimal, positions: List[Position], open_orders: Optional[List[OpenOrder]]) -> Decimal:
        try:
            balance = await self.exchange.get_balance(self.quote_currency)
        except Exception as e:
            log.warning(f"Could not get quote balance, falling back to NAV | error={e}")
            cash = nav
            for pos in positions:
                try:
                    ticker = await self.exchange.get_ticker(pos.symbol)
                    cash -= pos.quantity * ticker.price
                except Exception:
                    cash -= pos.quantity * pos.entry_price
            return cash

        locked = sum((o.locked_value for o in (open_orders or []) if o.side == Side.BUY), Decimal("0"))
        return balance.free - locked

    def _sell(self, decision: TradeDecision) -> TradeDecision:
        self.state.set_cooldown(decision.symbol, self.settings.cooldown_cycles)
        return decision

    # --- cycle ---
    async def evaluate(self) -> List[TradeDecision]:
        """Run one allocation cycle and return the ordered decisions (sells first)."""
        s = self.settings
        self.last_reasons = []
        if not self.state.enabled:
            log.debug("Strategy is disabled")
            self.last_reasons.append("strategy disabled")
            return []

        nav = await self._nav()
        if nav < s.min_balance_usd:
            log.info(f"NAV below minimum, skipping evaluation | nav={nav} min_balance={s.min_balance_usd}")
            self.last_reasons.append(f"NAV {nav} below minimum {s.min_balance_usd}")
            return []

        ranked = await self.rank_signals()
        positions = await self._open_positions()
        open_orders = await self._open_orders()
        held = {p.symbol for p in positions}
        pending_buys = {o.symbol for o in (open_orders or []) if o.side == Side.BUY and o.symbol not in held}
        pending_sells = {o.symbol for o in (open_orders or []) if o.side == Side.SELL}
        busy = set(self.busy_symbols())

        slots = max(0, s.max_positions - (len(positions) + len(pending_buys)))
        targets = [symbol for symbol, _ in ranked[:slots]]
        log.info(
            f"Position selection | max_positions={s.max_positions} open={len(positions)} "
            f"pending_buys={len(pending_buys)} slots={slots} targets={targets} "
            f"ranked={[(sym, f'{b.score:.4f}') for sym, b in ranked[:5]]}"
        )

        self.state.tick()

        decisions = [self._sell(d) for d in await self._risk_exits(positions, pending_sells | busy)]
        exited = {d.symbol for d in decisions}

        for pos in positions:
            if pos.symbol in exited or pos.symbol in pending_sells or pos.symbol in busy:
                continue
            if pos.symbol not in targets:
                decisions.append(self._sell(TradeDecision(pos.symbol, Side.SELL, pos.quantity, "rebalance")))
                exited.add(pos.symbol)

        cash = await self._available_cash(nav, positions, open_orders)
        allocated = Decimal("0")
        buys = 0
        for symbol in targets:
            if symbol in held:
                continue
            if symbol in pending_buys or symbol in busy:
                self.last_reasons.append(f"{symbol}: order already pending")
                continue
            if self.state.in_cooldown(symbol):
                self.last_reasons.append(f"{symbol}: cooling down ({self.state.cooldowns[symbol]} cycles)")
                continue
            if buys >= slots:
                break
            try:
                ticker = await self.exchange.get_ticker(symbol)
                lot = await self.lot_sizes.get(symbol)
            except Exception as e:
                log.warning(f"Skipping entry, quote unavailable | symbol={symbol} error={e}")
                self.last_reasons.append(f"{symbol}: quote unavailable")
                continue

            remaining = cash - allocated
            sizing = size_order(remaining, ticker.price, s, lot)
            if sizing.quantity <= 0:
                log.debug(f"Skipping entry | symbol={symbol} remaining_cash={remaining:.4f} reason={sizing.reason}")
                self.last_reasons.append(f"{symbol}: {sizing.reason}")
                continue

            order_value = sizing.quantity * ticker.price
            buffer = max(remaining * CASH_BUFFER_FRACTION, s.cash_buffer_floor_usd)
            if order_value > remaining - buffer:
                log.info(f"Order value exceeds available cash, skipping | symbol={symbol} order_value={order_value:.4f} remaining={remaining:.4f} buffer={buffer:.4f}")
                self.last_reasons.append(f"{symbol}: insufficient cash")
                continue

            allocated += order_value
            buys += 1
            decisions.append(TradeDecision(symbol, Side.BUY, sizing.quantity, "entry"))
            log.info(f"Added buy | symbol={symbol} qty={sizing.quantity} order_value={order_value:.4f} allocated={allocated:.4f} cash={cash:.4f}")

        if not decisions:
            if slots == 0:
                self.last_reasons.append("no free slots")
            if not ranked:
                self.last_reasons.append("no symbol passed the entry filter")
            log.info(f"No trades this cycle | reasons={self.last_reasons or ['targets already held']}")
        else:
            summary = ", ".join(f"{d.side.value.upper()} {d.symbol} ({d.quantity})" for d in decisions)
            log.info(f"Evaluation complete | trades=[{summary}] cash={cash:.4f} allocated={allocated:.4f}")
        return decisions

    async def check_risk_exits(self) -> List[TradeDecision]:
        """Risk-exit pass only, for the frequent risk-check loop."""
        if not self.state.enabled:
            return []
        positions = await self._open_positions()
        open_orders = await self._open_orders()
        if open_orders is None:
            log.warning("Skipping risk check, open orders unavailable")
            return []
        pending_sells = {o.symbol for o in open_orders if o.side == Side.SELL}
        skip = pending_sells | set(self.busy_symbols())
        return [self._sell(d) for d in await self._risk_exits(positions, skip)]