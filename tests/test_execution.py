"""Tests for the order executor: limit fill, timeout fallback, slippage guard, cancel race."""
from decimal import Decimal

import pytest

from rotation.errors import (
    InsufficientBalanceError,
    InvalidQuantityError,
    MarketOrderNotFilledError,
    SlippageExceededError,
    SymbolBusyError,
)
from rotation.exchange import InMemoryExchange
from rotation.execution import (
    ExecutionRequest,
    OrderExecutor,
    build_client_order_id,
    order_belongs_to_bot,
    sell_balance_tolerance,
)
from rotation.models import LotSizeInfo, OpenOrder, OrderStatus, Position, Side
from rotation.order_state import ExecutionState


def make_executor(exchange, ledger, alerts, settings, clock):
    return OrderExecutor(exchange, ledger, alerts, settings, sleep=clock.sleep, clock=clock)


class FillOnCancel(InMemoryExchange):
    """Exchange where the limit order fills just as the cancel arrives."""

    async def cancel_order(self, order_id):
        self._record("cancel_order", order_id)
        self.fill(order_id)
        return False


@pytest.mark.asyncio
async def test_immediate_limit_fill_records_trade_and_position(ledger, alerts, execution_settings, fake_clock):
    exchange = InMemoryExchange(auto_fill_limit=True)
    exchange.set_price("BTC-USD", Decimal("100"), spread=Decimal("2"))
    executor = make_executor(exchange, ledger, alerts, execution_settings, fake_clock)

    result = await executor.execute(ExecutionRequest("BTC-USD", Side.BUY, Decimal("0.5")))

    # ask 101 * (1 - 0.001)
    assert result.price == Decimal("100.899")
    assert not result.via_market
    assert result.machine.state == ExecutionState.FILLED
    assert exchange.calls_to("cancel_order") == []
    assert exchange.calls_to("place_market_order") == []

    trades = ledger.trades.find_all()
    assert len(trades) == 1 and trades[0].side == Side.BUY
    positions = ledger.positions.find_open_by_symbol("BTC-USD", "test-bot")
    assert len(positions) == 1
    assert positions[0].quantity == Decimal("0.5")
    assert executor.in_flight() == {}


@pytest.mark.asyncio
async def test_timeout_cancels_once_and_falls_back_to_market(exchange, ledger, alerts, execution_settings, fake_clock):
    exchange.set_price("BTC-USD", Decimal("100"))
    executor = make_executor(exchange, ledger, alerts, execution_settings, fake_clock)

    result = await executor.execute(ExecutionRequest("BTC-USD", Side.BUY, Decimal("1")))

    assert len(exchange.calls_to("cancel_order")) == 1
    assert len(exchange.calls_to("place_market_order")) == 1
    assert result.via_market
    assert result.price == Decimal("100")
    assert fake_clock.now >= 15 * 60
    assert [s for s in result.machine.path] == [
        ExecutionState.PLACED,
        ExecutionState.POLLING,
        ExecutionState.TIMED_OUT,
        ExecutionState.CANCELLING,
        ExecutionState.MARKET_FALLBACK,
        ExecutionState.FILLED,
    ]
    assert fake_clock.sleeps[-1] == execution_settings.market_settle_seconds
    assert len(ledger.trades.find_all()) == 1


class PricelessMarketFills(InMemoryExchange):
    """Exchange whose market-order status omits the average fill price."""

    async def get_order_status(self, order_id):
        result = await super().get_order_status(order_id)
        if self.orders[order_id]["type"] == "market":
            result.filled_price = None
        return result


@pytest.mark.asyncio
async def test_market_fill_without_price_recorded_at_limit_price(ledger, alerts, execution_settings, fake_clock):
    exchange = PricelessMarketFills()
    exchange.set_price("BTC-USD", Decimal("100"))
    executor = make_executor(exchange, ledger, alerts, execution_settings, fake_clock)

    result = await executor.execute(ExecutionRequest("BTC-USD", Side.BUY, Decimal("1")))

    assert result.via_market
    # limit was ask 100 * (1 - 0.001); the fresh ask is not used
    assert result.price == Decimal("99.9")
    assert ledger.trades.find_all()[0].price == Decimal("99.9")


@pytest.mark.asyncio
async def test_slippage_guard_aborts_without_market_order(exchange, ledger, alerts, execution_settings, fake_clock):
    execution_settings.max_slippage_pct = Decimal("0.0005")
    exchange.set_price("BTC-USD", Decimal("100"))
    executor = make_executor(exchange, ledger, alerts, execution_settings, fake_clock)

    # limit at 99.9, market moves to 100.5 while the order rests
    async def moving_sleep(seconds):
        await fake_clock.sleep(seconds)
        exchange.set_price("BTC-USD", Decimal("100.5"))

    executor.sleep = moving_sleep
    with pytest.raises(SlippageExceededError):
        await executor.execute(ExecutionRequest("BTC-USD", Side.BUY, Decimal("1")))

    assert len(exchange.calls_to("cancel_order")) == 1
    assert exchange.calls_to("place_market_order") == []
    assert ledger.trades.find_all() == []
    recorded = ledger.alerts.find_by_type("order_failure")
    assert len(recorded) == 1
    assert recorded[0].metadata["symbol"] == "BTC-USD"
    assert executor.in_flight() == {}


@pytest.mark.asyncio
async def test_fill_during_cancel_is_processed_as_fill(ledger, alerts, execution_settings, fake_clock):
    exchange = FillOnCancel()
    exchange.set_price("ETH-USD", Decimal("50"))
    executor = make_executor(exchange, ledger, alerts, execution_settings, fake_clock)

    result = await executor.execute(ExecutionRequest("ETH-USD", Side.BUY, Decimal("2")))

    assert not result.via_market
    assert exchange.calls_to("place_market_order") == []
    assert result.machine.state == ExecutionState.FILLED
    assert len(ledger.trades.find_all()) == 1


@pytest.mark.asyncio
async def test_quantity_rounding_to_zero_is_fatal(exchange, ledger, alerts, execution_settings, fake_clock):
    exchange.set_price("BTC-USD", Decimal("100"))
    exchange.lot_sizes["BTC-USD"] = LotSizeInfo(Decimal("0.01"), 2, Decimal("0.01"), 1)
    executor = make_executor(exchange, ledger, alerts, execution_settings, fake_clock)

    with pytest.raises(InvalidQuantityError):
        await executor.execute(ExecutionRequest("BTC-USD", Side.BUY, Decimal("0.009")))
    assert exchange.calls_to("place_limit_order") == []


@pytest.mark.asyncio
async def test_quantity_rounded_down_to_lot(exchange, ledger, alerts, execution_settings, fake_clock):
    exchange.auto_fill_limit = True
    exchange.set_price("BTC-USD", Decimal("100"))
    exchange.lot_sizes["BTC-USD"] = LotSizeInfo(Decimal("0.01"), 2, Decimal("0.01"), 1)
    executor = make_executor(exchange, ledger, alerts, execution_settings, fake_clock)

    await executor.execute(ExecutionRequest("BTC-USD", Side.BUY, Decimal("0.129")))
    placed = exchange.calls_to("place_limit_order")[0]
    assert placed[2] == Decimal("0.12")
    # buy price rounds down to one decimal
    assert placed[3] == Decimal("99.9")


@pytest.mark.asyncio
async def test_sell_requires_free_base_balance(exchange, ledger, alerts, execution_settings, fake_clock):
    exchange.set_price("BTC-USD", Decimal("100"))
    exchange.set_balance("BTC", Decimal("0.5"))
    executor = make_executor(exchange, ledger, alerts, execution_settings, fake_clock)

    with pytest.raises(InsufficientBalanceError):
        await executor.execute(ExecutionRequest("BTC-USD", Side.SELL, Decimal("1")))
    assert exchange.calls_to("place_limit_order") == []


@pytest.mark.asyncio
async def test_sell_within_tolerance_closes_position(exchange, ledger, alerts, execution_settings, fake_clock):
    exchange.auto_fill_limit = True
    exchange.set_price("BTC-USD", Decimal("100"))
    exchange.set_balance("BTC", Decimal("0.99995"))
    ledger.positions.create(Position("BTC-USD", Decimal("1"), Decimal("90"), bot_id="test-bot"))
    executor = make_executor(exchange, ledger, alerts, execution_settings, fake_clock)

    result = await executor.execute(ExecutionRequest("BTC-USD", Side.SELL, Decimal("1")))

    assert result.side == Side.SELL
    # bid 100 * (1 + 0.001)
    assert result.price == Decimal("100.1")
    assert ledger.positions.find_open_by_symbol("BTC-USD", "test-bot") == []


@pytest.mark.asyncio
async def test_unfilled_market_order_is_fatal(ledger, alerts, execution_settings, fake_clock):
    exchange = InMemoryExchange(auto_fill_market=False)
    exchange.set_price("BTC-USD", Decimal("100"))
    executor = make_executor(exchange, ledger, alerts, execution_settings, fake_clock)

    with pytest.raises(MarketOrderNotFilledError):
        await executor.execute(ExecutionRequest("BTC-USD", Side.BUY, Decimal("1")))
    assert ledger.trades.find_all() == []
    assert len(ledger.alerts.find_by_type("order_failure")) == 1


@pytest.mark.asyncio
async def test_second_execution_for_busy_symbol_is_refused(exchange, ledger, alerts, execution_settings, fake_clock):
    executor = make_executor(exchange, ledger, alerts, execution_settings, fake_clock)
    executor._in_flight["BTC-USD"] = Side.BUY

    with pytest.raises(SymbolBusyError):
        await executor.execute(ExecutionRequest("BTC-USD", Side.SELL, Decimal("1")))
    assert exchange.calls == []
    assert executor.busy_symbols() == ["BTC-USD"]


@pytest.mark.asyncio
async def test_externally_cancelled_order_stops_polling(exchange, ledger, alerts, execution_settings, fake_clock):
    exchange.set_price("BTC-USD", Decimal("100"))
    executor = make_executor(exchange, ledger, alerts, execution_settings, fake_clock)

    async def cancel_on_sleep(seconds):
        await fake_clock.sleep(seconds)
        for oid, order in exchange.orders.items():
            if order["type"] == "limit":
                order["status"] = OrderStatus.CANCELLED

    executor.sleep = cancel_on_sleep
    result = await executor.execute(ExecutionRequest("BTC-USD", Side.BUY, Decimal("1")))

    assert result.via_market
    assert fake_clock.now < 15 * 60


def test_request_round_trips_through_job_payload():
    request = ExecutionRequest("BTC-USD", Side.SELL, Decimal("0.25"), Decimal("101.5"))
    assert ExecutionRequest.from_dict(request.to_dict()) == request


def test_build_client_order_id_fits_userref():
    assert build_client_order_id("10", now_ms=1700000123456) == "100123456"
    assert len(build_client_order_id("12345", now_ms=1700000123456)) == 9
    assert build_client_order_id("", now_ms=1700000123456).startswith("10")


def test_order_belongs_to_bot():
    base = dict(symbol="BTC-USD", side=Side.BUY, quantity=Decimal("1"), remaining_quantity=Decimal("1"), price=Decimal("1"), opened_at=None)
    assert order_belongs_to_bot(OpenOrder(order_id="a", client_order_id="100123456", **base), "10")
    assert not order_belongs_to_bot(OpenOrder(order_id="b", client_order_id="990123456", **base), "10")
    assert order_belongs_to_bot(OpenOrder(order_id="c", client_order_id=None, **base), "10")


def test_sell_balance_tolerance_has_floor():
    assert sell_balance_tolerance(Decimal("0.01")) == Decimal("0.0001")
    assert sell_balance_tolerance(Decimal("100")) == Decimal("0.0100")
