"""Tests for balance sync, drift closing, NAV and stale-order cleanup."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from rotation.models import Position, Side, Trade
from rotation.reconcile import NAV_KEY, TOTAL_FEES_KEY, ReconcileReport, Reconciler, normalize_asset_code

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def reconciler(exchange, ledger, alerts, strategy, execution_settings, alert_config):
    return Reconciler(
        exchange,
        ledger,
        alerts,
        strategy,
        execution_settings,
        alert_config,
        quote_currency="USD",
        clock=lambda: NOW,
    )


def open_position(ledger, symbol, qty, entry="100"):
    return ledger.positions.create(Position(symbol, Decimal(qty), Decimal(entry), bot_id="test-bot"))


@pytest.mark.asyncio
async def test_balance_fetch_failure_aborts_with_no_mutations(reconciler, exchange, ledger):
    open_position(ledger, "ETH-USD", "1")
    exchange.fail("get_all_balances")

    with patch.object(ledger.positions, "create", wraps=ledger.positions.create) as create, \
            patch.object(ledger.positions, "close", wraps=ledger.positions.close) as close, \
            patch.object(ledger.positions, "update_quantity", wraps=ledger.positions.update_quantity) as update, \
            patch.object(ledger.metrics, "create", wraps=ledger.metrics.create) as metric:
        report = await reconciler.run(job_id="r1")

    assert report.aborted
    assert "balance fetch failed" in report.abort_reason
    assert create.call_count == close.call_count == update.call_count == metric.call_count == 0
    assert len(ledger.positions.find_open("test-bot")) == 1
    assert len(ledger.alerts.find_by_type("exchange_unreachable")) == 1


@pytest.mark.asyncio
async def test_empty_balances_abort(reconciler, exchange, ledger):
    open_position(ledger, "ETH-USD", "1")

    report = await reconciler.run()

    assert report.aborted
    assert report.abort_reason == "empty balances"
    assert len(ledger.positions.find_open("test-bot")) == 1
    assert ledger.metrics.find_latest(NAV_KEY) is None


@pytest.mark.asyncio
async def test_creates_position_from_prefixed_asset_code(reconciler, exchange, ledger):
    exchange.set_balance("XXBT", Decimal("0.5"))
    exchange.set_balance("ZUSD", Decimal("100"))
    exchange.set_price("BTC-USD", Decimal("40000"))

    report = await reconciler.run()

    assert report.created == ["BTC-USD"]
    [pos] = ledger.positions.find_open("test-bot")
    assert pos.symbol == "BTC-USD"
    assert pos.quantity == Decimal("0.5")
    assert pos.entry_price == Decimal("40000")


@pytest.mark.asyncio
async def test_creates_positions_beyond_max_positions(reconciler, exchange, ledger, strategy):
    for asset in ("BTC", "ETH", "SOL"):
        exchange.set_balance(asset, Decimal("1"))
        exchange.set_price(f"{asset}-USD", Decimal("10"))

    report = await reconciler.run()

    assert len(report.created) == 3 > strategy.max_positions


@pytest.mark.asyncio
async def test_unresolved_asset_is_skipped(reconciler, exchange, ledger):
    exchange.set_balance("FOO", Decimal("3"))

    report = await reconciler.run()

    assert report.unresolved_assets == ["FOO"]
    assert ledger.positions.find_open("test-bot") == []


@pytest.mark.asyncio
async def test_quantity_within_churn_tolerance_is_left_alone(reconciler, exchange, ledger):
    pos = open_position(ledger, "BTC-USD", "1")
    exchange.set_balance("BTC", Decimal("1.005"))
    exchange.set_price("BTC-USD", Decimal("100"))

    report = await reconciler.run()

    assert report.updated == []
    assert ledger.positions.get(pos.id).quantity == Decimal("1")


@pytest.mark.asyncio
async def test_quantity_beyond_churn_tolerance_is_corrected(reconciler, exchange, ledger):
    pos = open_position(ledger, "BTC-USD", "1")
    exchange.set_balance("BTC", Decimal("1.02"))
    exchange.set_price("BTC-USD", Decimal("100"))

    report = await reconciler.run()

    assert report.updated == ["BTC-USD"]
    assert ledger.positions.get(pos.id).quantity == Decimal("1.02")


@pytest.mark.asyncio
async def test_position_without_balance_is_closed(reconciler, exchange, ledger):
    open_position(ledger, "ETH-USD", "1")
    exchange.set_balance("BTC", Decimal("1"))
    exchange.set_price("BTC-USD", Decimal("100"))

    report = await reconciler.run()

    assert report.closed == ["ETH-USD"]
    assert ledger.positions.find_open_by_symbol("ETH-USD", "test-bot") == []


@pytest.mark.asyncio
async def test_dust_balance_counts_as_gone(reconciler, exchange, ledger):
    open_position(ledger, "ETH-USD", "1")
    exchange.set_balance("XETH", Decimal("0.000001"))
    exchange.set_balance("USD", Decimal("100"))

    report = await reconciler.run()

    assert "ETH-USD" in report.closed


@pytest.mark.asyncio
async def test_pending_sell_is_not_closed(reconciler, exchange, ledger):
    open_position(ledger, "ETH-USD", "1")
    exchange.set_balance("USD", Decimal("100"))
    exchange.add_open_order("ETH-USD", Side.SELL, Decimal("1"), Decimal("100"), opened_at=NOW)

    report = await reconciler.run()

    assert report.closed == []
    assert report.skipped_pending == ["ETH-USD"]


@pytest.mark.asyncio
async def test_in_flight_sell_is_not_closed(reconciler, exchange, ledger):
    open_position(ledger, "ETH-USD", "1")
    exchange.set_balance("USD", Decimal("100"))
    reconciler.in_flight = lambda: {"ETH-USD": Side.SELL}

    report = await reconciler.run()

    assert report.closed == []


@pytest.mark.asyncio
async def test_open_orders_failure_skips_drift_closing(reconciler, exchange, ledger):
    open_position(ledger, "ETH-USD", "1")
    exchange.set_balance("USD", Decimal("100"))
    exchange.fail("get_open_orders")

    report = await reconciler.run()

    assert report.closed == []
    assert not report.aborted


@pytest.mark.asyncio
async def test_just_created_symbol_is_not_closed(reconciler, ledger):
    open_position(ledger, "ETH-USD", "1")
    report = ReconcileReport(job_id="t")

    await reconciler.close_drifted({}, {"ETH-USD"}, report)

    assert report.closed == []


@pytest.mark.asyncio
async def test_nav_is_quote_plus_mark_to_market(reconciler, exchange, ledger):
    open_position(ledger, "BTC-USD", "0.5")
    exchange.set_balance("BTC", Decimal("0.5"))
    exchange.set_balance("USD", Decimal("100"), Decimal("10"))
    exchange.set_price("BTC-USD", Decimal("200"))
    ledger.trades.create(Trade("BTC-USD", Side.BUY, Decimal("0.5"), Decimal("180"), Decimal("0.25")))

    report = await reconciler.run()

    assert report.nav == Decimal("210")
    assert ledger.metrics.find_latest(NAV_KEY).value == Decimal("210")
    assert ledger.metrics.find_latest(TOTAL_FEES_KEY).value == Decimal("0.25")


@pytest.mark.asyncio
async def test_nav_omits_position_without_quote(reconciler, exchange, ledger):
    open_position(ledger, "BTC-USD", "0.5")
    open_position(ledger, "ETH-USD", "2")
    exchange.set_balance("BTC", Decimal("0.5"))
    exchange.set_balance("ETH", Decimal("2"))
    exchange.set_balance("USD", Decimal("100"))
    exchange.set_price("BTC-USD", Decimal("200"))

    report = await reconciler.run()

    assert report.nav == Decimal("200")
    assert len(ledger.positions.find_open("test-bot")) == 2


@pytest.mark.asyncio
async def test_quote_balance_failure_skips_nav(reconciler, exchange, ledger):
    exchange.set_balance("USD", Decimal("100"))
    exchange.fail("get_balance")

    report = await reconciler.run()

    assert report.nav is None
    assert ledger.metrics.find_latest(NAV_KEY) is None


@pytest.mark.asyncio
async def test_low_balance_alert(reconciler, exchange, ledger):
    exchange.set_balance("USD", Decimal("20"))

    await reconciler.run()

    [alert] = ledger.alerts.find_by_type("low_balance")
    assert alert.sent


@pytest.mark.asyncio
async def test_drawdown_alert_against_peak(reconciler, exchange, ledger):
    ledger.metrics.create(NAV_KEY, Decimal("1000"), created_at=NOW - timedelta(hours=2))
    exchange.set_balance("USD", Decimal("800"))

    await reconciler.run()

    [alert] = ledger.alerts.find_by_type("large_drawdown")
    assert Decimal(alert.metadata["peak_nav"]) == Decimal("1000")
    assert ledger.alerts.find_by_type("low_balance") == []


@pytest.mark.asyncio
async def test_stale_orders_are_cancelled(reconciler, exchange):
    stale = exchange.add_open_order("BTC-USD", Side.BUY, Decimal("1"), Decimal("10"), opened_at=NOW - timedelta(minutes=20))
    fresh = exchange.add_open_order("ETH-USD", Side.BUY, Decimal("1"), Decimal("10"), opened_at=NOW - timedelta(minutes=5))
    foreign = exchange.add_open_order("SOL-USD", Side.BUY, Decimal("1"), Decimal("10"), opened_at=NOW - timedelta(hours=3))
    exchange.orders[foreign]["client_order_id"] = "990000001"

    cancelled = await reconciler.cancel_stale_orders()

    assert cancelled == [stale]
    assert [args[0] for args in exchange.calls_to("cancel_order")] == [stale]
    assert fresh not in cancelled


@pytest.mark.asyncio
async def test_stale_order_cancel_failure_is_not_fatal(reconciler, exchange):
    exchange.add_open_order("BTC-USD", Side.BUY, Decimal("1"), Decimal("10"), opened_at=NOW - timedelta(minutes=20))
    exchange.fail("cancel_order")

    assert await reconciler.cancel_stale_orders() == []


@pytest.mark.parametrize(
    "code,expected",
    [
        ("XXBT", "BTC"),
        ("XBT", "BTC"),
        ("XETH", "ETH"),
        ("ZUSD", "USD"),
        ("XXRP", "XRP"),
        ("XRP", "XRP"),
        ("XDG", "DOGE"),
        ("XXLM", "XLM"),
        ("ZEC", "ZEC"),
        ("sol", "SOL"),
        ("DOT", "DOT"),
    ],
)
def test_normalize_asset_code(code, expected):
    assert normalize_asset_code(code) == expected
