from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

from rotation.models import Alert, Position, PositionStatus, Side, Signal, Trade
from rotation.persistence_sqlite import SQLiteLedger

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_positions_round_trip_and_close(ledger):
    pos = ledger.positions.create(Position("BTC-USD", Decimal("0.01"), Decimal("60000"), bot_id="bot-a"))
    assert pos.id is not None

    loaded = ledger.positions.get(pos.id)
    assert loaded.quantity == Decimal("0.01")
    assert loaded.entry_price == Decimal("60000")
    assert loaded.status == PositionStatus.OPEN

    ledger.positions.update_quantity(pos.id, Decimal("0.02"))
    assert ledger.positions.get(pos.id).quantity == Decimal("0.02")

    ledger.positions.close(pos.id)
    closed = ledger.positions.get(pos.id)
    assert closed.status == PositionStatus.CLOSED
    assert closed.closed_at is not None
    assert ledger.positions.find_open() == []
    assert len(ledger.positions.find_by_symbol("BTC-USD")) == 1


def test_find_open_filters_by_bot_and_symbol(ledger):
    ledger.positions.create(Position("BTC-USD", Decimal("1"), Decimal("1"), bot_id="bot-a"))
    ledger.positions.create(Position("BTC-USD", Decimal("1"), Decimal("1"), bot_id="bot-b"))
    ledger.positions.create(Position("ETH-USD", Decimal("1"), Decimal("1"), bot_id="bot-a"))

    assert len(ledger.positions.find_open()) == 3
    assert [p.symbol for p in ledger.positions.find_open("bot-a")] == ["BTC-USD", "ETH-USD"]
    assert len(ledger.positions.find_open_by_symbol("BTC-USD")) == 2
    assert len(ledger.positions.find_open_by_symbol("BTC-USD", "bot-b")) == 1


def test_trades_ordering_and_fees(ledger):
    ledger.trades.create(Trade("BTC-USD", Side.BUY, Decimal("1"), Decimal("100"), Decimal("0.1"), "o1", created_at=T0))
    ledger.trades.create(Trade("BTC-USD", Side.SELL, Decimal("1"), Decimal("110"), Decimal("0.2"), "o2", created_at=T0 + timedelta(hours=1)))
    ledger.trades.create(Trade("ETH-USD", Side.BUY, Decimal("2"), Decimal("10"), Decimal("0.05"), "o3", created_at=T0 + timedelta(hours=2)))

    assert [t.exchange_order_id for t in ledger.trades.find_all()] == ["o1", "o2", "o3"]
    assert [t.exchange_order_id for t in ledger.trades.find_all(limit=2)] == ["o2", "o3"]
    assert len(ledger.trades.find_by_symbol("BTC-USD")) == 2
    assert ledger.trades.total_fees() == Decimal("0.35")


def test_signal_latest_by_symbol(ledger):
    for hour, score in ((0, "1.01"), (6, "1.02")):
        ledger.signals.create(Signal(
            "BTC-USD", Decimal("101"), Decimal("100"), Decimal("55"), Decimal(score), "6h",
            generated_at=T0 + timedelta(hours=hour),
        ))
    latest = ledger.signals.find_latest_by_symbol("BTC-USD")
    assert latest.score == Decimal("1.02")
    assert ledger.signals.find_latest_by_symbol("ETH-USD") is None
    assert len(ledger.signals.find_latest(limit=10)) == 2


def test_metric_history_range_newest_first(ledger):
    for i in range(5):
        ledger.metrics.create("NAV", Decimal(1000 + i), created_at=T0 + timedelta(hours=i))

    assert ledger.metrics.find_latest("NAV").value == Decimal("1004")
    window = ledger.metrics.find_history("NAV", T0 + timedelta(hours=1), T0 + timedelta(hours=3))
    assert [m.value for m in window] == [Decimal("1003"), Decimal("1002"), Decimal("1001")]
    assert len(ledger.metrics.find_history("NAV", limit=2)) == 2
    assert ledger.metrics.find_latest("TOTAL_FEES") is None


def test_alert_metadata_round_trip(ledger):
    ledger.alerts.create(Alert("low_balance", "warning", "Low", "msg", {"balance": "12.5"}, sent=False))
    [alert] = ledger.alerts.find_by_type("low_balance")
    assert alert.metadata == {"balance": "12.5"}
    assert alert.sent is False
    assert len(ledger.alerts.find_recent()) == 1


def test_ledger_reopens_existing_file(tmp_path: Path):
    path = tmp_path / "reopen.db"
    first = SQLiteLedger(path)
    first.positions.create(Position("SOL-USD", Decimal("3"), Decimal("20")))
    first.close()

    second = SQLiteLedger(path)
    [pos] = second.positions.find_open()
    assert pos.symbol == "SOL-USD"
    assert pos.opened_at.tzinfo is not None
    second.close()
