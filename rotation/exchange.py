"""
Exchange adapter contract.

Provides the async adapter interface every exchange integration implements,
lot-size rounding helpers, a 24h lot-size cache and an in-memory adapter
that tests drive directly (fills, failures, balances).
"""

import itertools
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from decimal import ROUND_DOWN, ROUND_UP, Decimal
from typing import Callable, Dict, List, Optional, Tuple

from .errors import ExchangeError
from .models import (
    Balance,
    Candle,
    LotSizeInfo,
    OpenOrder,
    OrderResult,
    OrderStatus,
    Side,
    Ticker,
)

DEFAULT_LOT_SIZE = LotSizeInfo(
    lot_size=Decimal("0.00000001"),
    lot_decimals=8,
    min_order_size=Decimal("0.00000001"),
    price_decimals=8,
)


class ExchangeAdapter(ABC):
    """Abstract async exchange adapter.

    All price/qty values use Decimal. Symbols use the ``BASE-QUOTE`` form
    (``BTC-USD``); adapters translate to exchange-native pair names.
    Failures raise :class:`ExchangeError`.
    """

    @abstractmethod
    async def get_ohlcv(self, symbol: str, interval: str, limit: int = 100) -> List[Candle]:
        """Return up to ``limit`` candles, oldest first. ``interval`` is e.g. ``"6h"`` or ``"1d"``."""

    @abstractmethod
    async def get_ticker(self, symbol: str) -> Ticker:
        pass

    @abstractmethod
    async def get_balance(self, asset: str) -> Balance:
        pass

    @abstractmethod
    async def get_all_balances(self) -> Dict[str, Balance]:
        """Return every non-zero balance keyed by the exchange's asset code."""

    @abstractmethod
    async def place_limit_order(
        self,
        symbol: str,
        side: Side,
        quantity: Decimal,
        price: Decimal,
        client_order_id: Optional[str] = None,
    ) -> str:
        """Place a post-only limit order and return the exchange order id."""

    @abstractmethod
    async def place_market_order(
        self,
        symbol: str,
        side: Side,
        quantity: Decimal,
        client_order_id: Optional[str] = None,
    ) -> str:
        pass

    @abstractmethod
    async def cancel_order(self, order_id: str) -> bool:
        """Cancel an open order. Returns False if the exchange refused the cancel."""

    @abstractmethod
    async def get_order_status(self, order_id: str) -> OrderResult:
        pass

    @abstractmethod
    async def get_lot_size_info(self, symbol: str) -> LotSizeInfo:
        pass

    @abstractmethod
    async def get_open_orders(self) -> List[OpenOrder]:
        pass


def round_to_lot_size(quantity: Decimal, info: LotSizeInfo) -> Decimal:
    """Floor ``quantity`` to the lot increment and the allowed decimals.

    Never increases the quantity; applying it twice gives the same result.

        >>> info = LotSizeInfo(Decimal("0.001"), 3, Decimal("0.01"))
        >>> round_to_lot_size(Decimal("1.23456"), info)
        Decimal('1.234')
    """
    if quantity <= 0:
        return Decimal("0")
    step = info.lot_size if info.lot_size > 0 else Decimal(1).scaleb(-info.lot_decimals)
    floored = (quantity / step).to_integral_value(rounding=ROUND_DOWN) * step
    return floored.quantize(Decimal(1).scaleb(-info.lot_decimals), rounding=ROUND_DOWN)


def round_price(price: Decimal, decimals: Optional[int], side: Side) -> Decimal:
    """Round a limit price to the pair's precision, away from the spread."""
    if decimals is None:
        return price
    rounding = ROUND_DOWN if side == Side.BUY else ROUND_UP
    return price.quantize(Decimal(1).scaleb(-decimals), rounding=rounding)


def split_symbol(symbol: str) -> Tuple[str, str]:
    """``"BTC-USD"`` -> ``("BTC", "USD")``."""
    if "-" not in symbol:
        raise ValueError(f"Symbol must look like BASE-QUOTE: {symbol}")
    base, quote = symbol.split("-", 1)
    return base, quote


class LotSizeCache:
    """Cache lot-size metadata per symbol for ``ttl_seconds`` (24h by default)."""

    def __init__(self, adapter: ExchangeAdapter, ttl_seconds: float = 24 * 3600, clock: Callable[[], float] = time.monotonic):
        self.adapter = adapter
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[str, Tuple[float, LotSizeInfo]] = {}

    async def get(self, symbol: str) -> LotSizeInfo:
        now = self.clock()
        cached = self._entries.get(symbol)
        if cached and now - cached[0] < self.ttl_seconds:
            return cached[1]
        info = await self.adapter.get_lot_size_info(symbol)
        self._entries[symbol] = (now, info)
        return info

    def invalidate(self, symbol: Optional[str] = None) -> None:
        if symbol is None:
            self._entries.clear()
        else:
            self._entries.pop(symbol, None)


class InMemoryExchange(ExchangeAdapter):
    """Adapter used for tests that records calls and lets tests drive fills.

    Limit orders stay pending until :meth:`fill` is called (or
    ``auto_fill_limit`` is set); market orders fill immediately at the ticker
    unless ``auto_fill_market`` is False. Any adapter method can be made to
    fail with :meth:`fail`.
    """

    def __init__(self, quote_currency: str = "USD", *, auto_fill_limit: bool = False, auto_fill_market: bool = True, fee_rate: Decimal = Decimal("0")):
        self.quote_currency = quote_currency
        self.auto_fill_limit = auto_fill_limit
        self.auto_fill_market = auto_fill_market
        self.fee_rate = fee_rate
        self.candles: Dict[Tuple[str, Optional[str]], List[Candle]] = {}
        self.tickers: Dict[str, Ticker] = {}
        self.balances: Dict[str, Balance] = {}
        self.lot_sizes: Dict[str, LotSizeInfo] = {}
        self.orders: Dict[str, dict] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self._failures: Dict[str, Exception] = {}
        self._ids = itertools.count(1)

    # --- test controls ---
    def set_candles(self, symbol: str, candles: List[Candle], interval: Optional[str] = None) -> None:
        self.candles[(symbol, interval)] = list(candles)

    def set_price(self, symbol: str, price: Decimal, spread: Decimal = Decimal("0")) -> None:
        half = spread / 2
        self.tickers[symbol] = Ticker(symbol=symbol, price=price, bid=price - half, ask=price + half)

    def set_balance(self, asset: str, free: Decimal, locked: Decimal = Decimal("0")) -> None:
        self.balances[asset] = Balance(asset=asset, free=free, locked=locked)

    def fail(self, method: str, exc: Optional[Exception] = None) -> None:
        self._failures[method] = exc or ExchangeError(f"{method} unavailable")

    def recover(self, method: str) -> None:
        self._failures.pop(method, None)

    def calls_to(self, method: str) -> List[tuple]:
        return [args for name, args in self.calls if name == method]

    def add_open_order(self, symbol: str, side: Side, quantity: Decimal, price: Decimal, opened_at: Optional[datetime] = None) -> str:
        oid = self._new_order(symbol, side, quantity, price, "limit", None)
        if opened_at is not None:
            self.orders[oid]["opened_at"] = opened_at
        return oid

    def fill(self, order_id: str, price: Optional[Decimal] = None, quantity: Optional[Decimal] = None, fee: Optional[Decimal] = None) -> None:
        order = self.orders[order_id]
        fill_price = price if price is not None else order["price"]
        fill_qty = quantity if quantity is not None else order["quantity"]
        order["filled_quantity"] = fill_qty
        order["filled_price"] = fill_price
        order["fee"] = fee if fee is not None else fill_price * fill_qty * self.fee_rate
        order["status"] = OrderStatus.FILLED
        self._settle(order)

    # --- internals ---
    def _record(self, method: str, *args) -> None:
        self.calls.append((method, args))
        if method in self._failures:
            raise self._failures[method]

    def _new_order(self, symbol, side, quantity, price, kind, client_order_id) -> str:
        oid = f"m{next(self._ids)}"
        self.orders[oid] = {
            "symbol": symbol,
            "side": side,
            "quantity": quantity,
            "price": price,
            "type": kind,
            "client_order_id": client_order_id,
            "status": OrderStatus.PENDING,
            "opened_at": datetime.now(timezone.utc),
        }
        return oid

    def _settle(self, order: dict) -> None:
        base, quote = split_symbol(order["symbol"])
        qty = order["filled_quantity"]
        cost = qty * order["filled_price"]
        base_bal = self.balances.get(base, Balance(base, Decimal("0")))
        quote_bal = self.balances.get(quote, Balance(quote, Decimal("0")))
        if order["side"] == Side.BUY:
            base_bal.free += qty
            quote_bal.free -= cost + order["fee"]
        else:
            base_bal.free -= qty
            quote_bal.free += cost - order["fee"]
        self.balances[base] = base_bal
        self.balances[quote] = quote_bal

    # --- adapter API ---
    async def get_ohlcv(self, symbol: str, interval: str, limit: int = 100) -> List[Candle]:
        self._record("get_ohlcv", symbol, interval, limit)
        candles = self.candles.get((symbol, interval))
        if candles is None:
            candles = self.candles.get((symbol, None))
        if candles is None:
            raise ExchangeError(f"No candles for {symbol}")
        return candles[-limit:]

    async def get_ticker(self, symbol: str) -> Ticker:
        self._record("get_ticker", symbol)
        if symbol not in self.tickers:
            raise ExchangeError(f"Unknown pair {symbol}")
        return self.tickers[symbol]

    async def get_balance(self, asset: str) -> Balance:
        self._record("get_balance", asset)
        return self.balances.get(asset, Balance(asset=asset, free=Decimal("0")))

    async def get_all_balances(self) -> Dict[str, Balance]:
        self._record("get_all_balances")
        return {k: v for k, v in self.balances.items() if v.total > 0}

    async def place_limit_order(self, symbol, side, quantity, price, client_order_id=None) -> str:
        self._record("place_limit_order", symbol, side, quantity, price, client_order_id)
        oid = self._new_order(symbol, side, quantity, price, "limit", client_order_id)
        if self.auto_fill_limit:
            self.fill(oid)
        return oid

    async def place_market_order(self, symbol, side, quantity, client_order_id=None) -> str:
        self._record("place_market_order", symbol, side, quantity, client_order_id)
        ticker = self.tickers.get(symbol)
        price = None
        if ticker is not None:
            price = ticker.ask if side == Side.BUY else ticker.bid
        oid = self._new_order(symbol, side, quantity, price, "market", client_order_id)
        if self.auto_fill_market and price is not None:
            self.fill(oid)
        return oid

    async def cancel_order(self, order_id: str) -> bool:
        self._record("cancel_order", order_id)
        order = self.orders.get(order_id)
        if order is None or order["status"] != OrderStatus.PENDING:
            return False
        order["status"] = OrderStatus.CANCELLED
        return True

    async def get_order_status(self, order_id: str) -> OrderResult:
        self._record("get_order_status", order_id)
        order = self.orders.get(order_id)
        if order is None:
            raise ExchangeError(f"Unknown order {order_id}")
        return OrderResult(
            order_id=order_id,
            status=order["status"],
            filled_quantity=order.get("filled_quantity"),
            filled_price=order.get("filled_price"),
            fee=order.get("fee"),
        )

    async def get_lot_size_info(self, symbol: str) -> LotSizeInfo:
        self._record("get_lot_size_info", symbol)
        return self.lot_sizes.get(symbol, DEFAULT_LOT_SIZE)

    async def get_open_orders(self) -> List[OpenOrder]:
        self._record("get_open_orders")
        out = []
        for oid, o in self.orders.items():
            if o["status"] != OrderStatus.PENDING or o["type"] != "limit":
                continue
            out.append(OpenOrder(
                order_id=oid,
                symbol=o["symbol"],
                side=o["side"],
                quantity=o["quantity"],
                remaining_quantity=o["quantity"] - (o.get("filled_quantity") or Decimal("0")),
                price=o["price"],
                opened_at=o["opened_at"],
                client_order_id=o["client_order_id"],
            ))
        return out


def order_age(order: OpenOrder, now: Optional[datetime] = None) -> timedelta:
    now = now or datetime.now(timezone.utc)
    return now - order.opened_at


__all__ = [
    "ExchangeAdapter",
    "InMemoryExchange",
    "LotSizeCache",
    "round_to_lot_size",
    "round_price",
    "split_symbol",
    "order_age",
    "DEFAULT_LOT_SIZE",
]
