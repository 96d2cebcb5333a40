"""
Order execution engine.

Turns one allocator decision into a confirmed fill:

    1. round the quantity down to the pair's lot size (zero is fatal)
    2. sells only: free base balance must cover the rounded quantity
    3. place a maker-biased limit order and poll it until FILL_TIMEOUT_MINUTES
    4. on timeout cancel it; a lost cancel race is processed as a fill
    5. otherwise fall back to a market order unless the fresh quote moved
       more than MAX_SLIPPAGE_PCT away from the limit price

A fill records one Trade and mutates the ledger Position (create on buy,
close the open positions of the symbol on sell). Fatal errors are alerted
and re-raised; the caller never retries, the next cycle decides again.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

from .alerts import AlertService
from .config import ExecutionSettings
from .errors import (
    ExecutionError,
    InsufficientBalanceError,
    InvalidQuantityError,
    MarketOrderNotFilledError,
    SlippageExceededError,
    SymbolBusyError,
)
from .exchange import ExchangeAdapter, LotSizeCache, round_price, round_to_lot_size, split_symbol
from .logging_setup import component_logger
from .models import OpenOrder, OrderResult, OrderStatus, Position, Side, Trade, TradeDecision
from .order_state import ExecutionState, ExecutionStateMachine

log = component_logger("execution")

BALANCE_TOLERANCE_FRACTION = Decimal("0.0001")
BALANCE_TOLERANCE_EPSILON = Decimal("0.0001")
USERREF_MAX_DIGITS = 9
DEFAULT_USERREF_PREFIX = "10"


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def build_client_order_id(prefix: str, now_ms: Optional[int] = None) -> str:
    """Numeric client id: bot prefix followed by the trailing millisecond digits.

    At most nine digits so it fits the exchange's signed int32 userref.

        >>> build_client_order_id("10", now_ms=1700000123456)
        '100123456'
    """
    prefix = _digits(prefix) or DEFAULT_USERREF_PREFIX
    prefix = prefix[: USERREF_MAX_DIGITS - 1]
    ms = str(now_ms if now_ms is not None else int(time.time() * 1000))
    return prefix + ms[-(USERREF_MAX_DIGITS - len(prefix)):]


def order_belongs_to_bot(order: OpenOrder, prefix: str) -> bool:
    """True when the order's client id carries the bot prefix (untagged orders count as ours)."""
    prefix = _digits(prefix)
    if not prefix or not order.client_order_id:
        return True
    return order.client_order_id.startswith(prefix)


def sell_balance_tolerance(quantity: Decimal) -> Decimal:
    return max(quantity * BALANCE_TOLERANCE_FRACTION, BALANCE_TOLERANCE_EPSILON)


@dataclass
class ExecutionRequest:
    """Payload of one execute-order unit."""

    symbol: str
    side: Side
    quantity: Decimal
    reference_price: Optional[Decimal] = None

    @classmethod
    def from_decision(cls, decision: TradeDecision, reference_price: Optional[Decimal] = None) -> "ExecutionRequest":
        return cls(decision.symbol, decision.side, decision.quantity, reference_price)

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": str(self.quantity),
            "reference_price": str(self.reference_price) if self.reference_price is not None else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ExecutionRequest":
        ref = d.get("reference_price")
        return cls(
            symbol=d["symbol"],
            side=Side(d["side"]),
            quantity=Decimal(str(d["quantity"])),
            reference_price=Decimal(str(ref)) if ref is not None else None,
        )


@dataclass
class ExecutionResult:
    symbol: str
    side: Side
    order_id: str
    quantity: Decimal
    price: Decimal
    fee: Decimal
    via_market: bool
    trade: Trade
    machine: ExecutionStateMachine


class OrderExecutor:
    """Drive one execution at a time per symbol against the exchange and the ledger.

    ``sleep`` and ``clock`` are injectable so tests can run the fill-timeout
    path without waiting.
    """

    def __init__(
        self,
        exchange: ExchangeAdapter,
        ledger,
        alerts: AlertService,
        settings: ExecutionSettings,
        *,
        lot_sizes: Optional[LotSizeCache] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.exchange = exchange
        self.ledger = ledger
        self.alerts = alerts
        self.settings = settings
        self.lot_sizes = lot_sizes or LotSizeCache(exchange)
        self.sleep = sleep
        self.clock = clock
        self._in_flight: Dict[str, Side] = {}

    @property
    def fill_timeout_seconds(self) -> float:
        return self.settings.fill_timeout_minutes * 60

    def in_flight(self) -> Dict[str, Side]:
        """Symbols with an execution currently running, and its side."""
        return dict(self._in_flight)

    def busy_symbols(self) -> List[str]:
        return list(self._in_flight)

    async def execute(self, request: ExecutionRequest, job_id: Optional[str] = None) -> ExecutionResult:
        """Run one execution unit to a terminal state.

        Raises:
            SymbolBusyError: another execution for the symbol is in flight
            ExecutionError: fatal failure (already alerted)
        """
        if request.symbol in self._in_flight:
            raise SymbolBusyError(request.symbol, f"Execution already in flight for {request.symbol}")
        self._in_flight[request.symbol] = request.side
        bound = log.bind(job_id=job_id)
        machine = ExecutionStateMachine(request.symbol)
        try:
            return await self._execute(request, machine, bound)
        except Exception as e:
            machine.fail(str(e))
            bound.error(
                f"Error executing order | symbol={request.symbol} side={request.side.value} "
                f"qty={request.quantity} state_path={[s.name for s in machine.path]} error={e}"
            )
            order_id = machine.market_order_id or machine.limit_order_id
            await self.alerts.alert_order_failure(request.symbol, str(e), order_id)
            raise
        finally:
            self._in_flight.pop(request.symbol, None)

    async def _execute(self, request: ExecutionRequest, machine: ExecutionStateMachine, bound) -> ExecutionResult:
        symbol, side = request.symbol, request.side
        lot = await self.lot_sizes.get(symbol)
        quantity = round_to_lot_size(request.quantity, lot)
        if quantity <= 0:
            raise InvalidQuantityError(symbol, f"Invalid quantity after rounding: {quantity} (original: {request.quantity})")

        if side == Side.SELL:
            await self._check_sell_balance(symbol, quantity, bound)

        ticker = await self.exchange.get_ticker(symbol)
        offset = self.settings.maker_offset_pct
        if side == Side.BUY:
            limit_price = round_price(ticker.ask * (1 - offset), lot.price_decimals, side)
        else:
            limit_price = round_price(ticker.bid * (1 + offset), lot.price_decimals, side)

        client_id = build_client_order_id(self.settings.bot_userref_prefix)
        order_id = await self.exchange.place_limit_order(symbol, side, quantity, limit_price, client_id)
        machine.limit_order_id = order_id
        bound.info(
            f"Placed limit order | symbol={symbol} side={side.value} order_id={order_id} "
            f"limit_price={limit_price} qty={quantity} original_qty={request.quantity} client_id={client_id}"
        )

        machine.transition(ExecutionState.POLLING)
        status = await self._poll(order_id)
        if status.is_filled:
            machine.transition(ExecutionState.FILLED)
            bound.info(f"Limit order filled | symbol={symbol} order_id={order_id}")
            return await self._record_fill(request, quantity, limit_price, status, False, machine, bound)

        machine.transition(ExecutionState.TIMED_OUT)
        bound.warning(
            f"Limit order not filled within {self.settings.fill_timeout_minutes} minutes, cancelling | "
            f"symbol={symbol} order_id={order_id} status={status.status.value}"
        )
        machine.transition(ExecutionState.CANCELLING)
        cancelled = False
        try:
            cancelled = await self.exchange.cancel_order(order_id)
        except Exception as e:
            bound.warning(f"Error cancelling order (may already be filled) | order_id={order_id} error={e}")
        if cancelled:
            bound.info(f"Cancelled limit order | symbol={symbol} order_id={order_id}")
        else:
            final = await self.exchange.get_order_status(order_id)
            if final.is_filled:
                machine.transition(ExecutionState.FILLED, "filled during cancellation")
                bound.info(f"Order was filled during cancellation check | symbol={symbol} order_id={order_id}")
                return await self._record_fill(request, quantity, limit_price, final, False, machine, bound)

        fresh = await self.exchange.get_ticker(symbol)
        expected = fresh.ask if side == Side.BUY else fresh.bid
        slippage = abs(expected - limit_price) / limit_price
        if slippage > self.settings.max_slippage_pct:
            raise SlippageExceededError(
                symbol,
                f"Slippage too high: {slippage * 100:.2f}% (max {self.settings.max_slippage_pct * 100:.2f}%)",
            )

        bound.info(
            f"Placing market order | symbol={symbol} side={side.value} qty={quantity} "
            f"limit_price={limit_price} expected_price={expected} slippage_pct={slippage * 100:.3f}"
        )
        market_id = await self.exchange.place_market_order(
            symbol, side, quantity, build_client_order_id(self.settings.bot_userref_prefix)
        )
        machine.market_order_id = market_id
        machine.transition(ExecutionState.MARKET_FALLBACK)
        await self.sleep(self.settings.market_settle_seconds)
        market_status = await self.exchange.get_order_status(market_id)
        if not market_status.is_filled:
            raise MarketOrderNotFilledError(symbol, f"Market order not filled: status {market_status.status.value}")
        machine.transition(ExecutionState.FILLED)
        return await self._record_fill(request, quantity, limit_price, market_status, True, machine, bound)

    async def _check_sell_balance(self, symbol: str, quantity: Decimal, bound) -> None:
        base, _ = split_symbol(symbol)
        try:
            balance = await self.exchange.get_balance(base)
        except Exception as e:
            bound.warning(f"Could not verify balance before sell order, proceeding anyway | symbol={symbol} error={e}")
            return
        required = quantity - sell_balance_tolerance(quantity)
        if balance.free < required:
            raise InsufficientBalanceError(
                symbol,
                f"Insufficient {base} balance for sell order. Required: {quantity:.8f}, Available (free): {balance.free:.8f}",
            )
        bound.debug(f"Balance check passed | symbol={symbol} qty={quantity} free={balance.free}")

    async def _poll(self, order_id: str) -> OrderResult:
        start = self.clock()
        status = await self.exchange.get_order_status(order_id)
        while not status.is_filled and self.clock() - start < self.fill_timeout_seconds:
            await self.sleep(self.settings.poll_interval_seconds)
            status = await self.exchange.get_order_status(order_id)
            if status.status == OrderStatus.CANCELLED:
                break
        return status

    async def _record_fill(
        self,
        request: ExecutionRequest,
        quantity: Decimal,
        fallback_price: Decimal,
        status: OrderResult,
        via_market: bool,
        machine: ExecutionStateMachine,
        bound,
    ) -> ExecutionResult:
        fill_qty = status.filled_quantity or quantity
        fill_price = status.filled_price or fallback_price
        fee = status.fee or Decimal("0")
        trade = Trade(
            symbol=request.symbol,
            side=request.side,
            quantity=fill_qty,
            price=fill_price,
            fee=fee,
            exchange_order_id=status.order_id,
        )
        await asyncio.to_thread(self.ledger.trades.create, trade)

        if request.side == Side.BUY:
            position = Position(
                symbol=request.symbol,
                quantity=fill_qty,
                entry_price=fill_price,
                bot_id=self.settings.bot_id,
            )
            await asyncio.to_thread(self.ledger.positions.create, position)
        else:
            open_positions = await asyncio.to_thread(
                self.ledger.positions.find_open_by_symbol, request.symbol, self.settings.bot_id
            )
            for pos in open_positions:
                await asyncio.to_thread(self.ledger.positions.close, pos.id)

        bound.info(
            f"Order filled | symbol={request.symbol} side={request.side.value} order_id={status.order_id} "
            f"filled_qty={fill_qty} fill_price={fill_price} fee={fee} market={via_market}"
        )
        return ExecutionResult(
            symbol=request.symbol,
            side=request.side,
            order_id=status.order_id,
            quantity=fill_qty,
            price=fill_price,
            fee=fee,
            via_market=via_market,
            trade=trade,
            machine=machine,
        )
