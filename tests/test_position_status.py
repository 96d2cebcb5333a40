import subprocess
import sys
from decimal import Decimal
from pathlib import Path

import pytest

from rotation.models import Position, Side, Trade
from rotation.persistence_sqlite import SQLiteLedger

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "position_status.py"


def run_cli(db_path, args):
    cmd = [sys.executable, str(SCRIPT), "--db", str(db_path)] + args
    res = subprocess.run(cmd, capture_output=True, text=True)
    return res.returncode, res.stdout


@pytest.fixture
def populated_db(tmp_path: Path):
    db = tmp_path / "status.db"
    ledger = SQLiteLedger(db)
    ledger.positions.create(Position("BTC-USD", Decimal("0.5"), Decimal("40000"), bot_id="bot-a"))
    ledger.positions.create(Position("ETH-USD", Decimal("2"), Decimal("2500"), bot_id="bot-b"))
    ledger.trades.create(Trade("BTC-USD", Side.BUY, Decimal("0.5"), Decimal("40000"), Decimal("20"), "OABC-1"))
    ledger.trades.create(Trade("SOL-USD", Side.BUY, Decimal("10"), Decimal("100"), Decimal("1")))
    ledger.trades.create(Trade("SOL-USD", Side.SELL, Decimal("10"), Decimal("110"), Decimal("1.1")))
    ledger.metrics.create("NAV", Decimal("1234.5"))
    ledger.metrics.create("TOTAL_FEES", Decimal("22.1"))
    ledger.close()
    return db


def test_missing_database_exits_nonzero(tmp_path: Path):
    code, out = run_cli(tmp_path / "absent.db", ["list"])
    assert code == 1
    assert "Database not found" in out


def test_list_filters_by_bot(populated_db):
    code, out = run_cli(populated_db, ["list"])
    assert code == 0
    assert "BTC-USD" in out and "ETH-USD" in out

    code, out = run_cli(populated_db, ["list", "--bot-id", "bot-a"])
    assert "BTC-USD" in out
    assert "ETH-USD" not in out


def test_show_symbol_includes_trades(populated_db):
    code, out = run_cli(populated_db, ["show", "BTC-USD"])
    assert code == 0
    assert "=== BTC-USD ===" in out
    assert "OABC-1" in out

    code, out = run_cli(populated_db, ["show", "DOGE-USD"])
    assert "No positions for DOGE-USD" in out


def test_nav_and_pnl(populated_db):
    code, out = run_cli(populated_db, ["nav"])
    assert code == 0
    assert "Current NAV: $1234.50" in out
    assert "Total fees: $22.1000" in out

    code, out = run_cli(populated_db, ["pnl"])
    assert code == 0
    assert "SOL-USD" in out
    assert "Total realized" in out


def test_empty_tables(tmp_path: Path):
    db = tmp_path / "empty.db"
    SQLiteLedger(db).close()
    assert "No signals" in run_cli(db, ["signals"])[1]
    assert "No alerts" in run_cli(db, ["alerts"])[1]
    assert "No trades" in run_cli(db, ["trades"])[1]
