#!/usr/bin/env python
"""Ledger status CLI: query positions, trades, signals, alerts and NAV from the database.

Usage:
    python scripts/position_status.py --db rotation.db list
    python scripts/position_status.py --db rotation.db show BTC-USD
    python scripts/position_status.py --db rotation.db trades --limit 20
    python scripts/position_status.py --db rotation.db signals
    python scripts/position_status.py --db rotation.db alerts
    python scripts/position_status.py --db rotation.db nav
    python scripts/position_status.py --db rotation.db pnl
"""
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from rotation.persistence_sqlite import SQLiteLedger
from rotation.pnl import aggregate_pnl, fifo_pnl


def format_decimal(d, decimals=2):
    """Format decimal for display."""
    return f"{d:.{decimals}f}"


def list_positions(ledger, bot_id=None):
    """List all open positions."""
    positions = ledger.positions.find_open(bot_id)

    if not positions:
        print("No open positions")
        return

    print(f"\n{'ID':<6} {'Symbol':<12} {'Qty':<16} {'Entry Price':<15} {'Bot':<12} {'Opened':<26}")
    print("-" * 90)

    for pos in positions:
        print(
            f"{pos.id:<6} "
            f"{pos.symbol:<12} "
            f"{format_decimal(pos.quantity, 8):<16} "
            f"{format_decimal(pos.entry_price, 4):<15} "
            f"{pos.bot_id:<12} "
            f"{pos.opened_at.isoformat():<26}"
        )


def show_symbol(ledger, symbol):
    """Show every position and trade recorded for a symbol."""
    positions = ledger.positions.find_by_symbol(symbol)

    if not positions:
        print(f"No positions for {symbol}")
        return

    print(f"\n=== {symbol} ===")
    for pos in positions:
        closed = pos.closed_at.isoformat() if pos.closed_at else "-"
        print(
            f"#{pos.id} {pos.status.value.upper():<7} qty={format_decimal(pos.quantity, 8)} "
            f"entry=${format_decimal(pos.entry_price, 4)} opened={pos.opened_at.isoformat()} closed={closed}"
        )

    trades = ledger.trades.find_by_symbol(symbol)
    if trades:
        print(f"\nTrades ({len(trades)}):")
        print_trades(trades)

    signal = ledger.signals.find_latest_by_symbol(symbol)
    if signal:
        print(
            f"\nLatest signal ({signal.cadence}, {signal.generated_at.isoformat()}): "
            f"ema12={format_decimal(signal.ema12, 4)} ema26={format_decimal(signal.ema26, 4)} "
            f"rsi={format_decimal(signal.rsi, 2)} score={format_decimal(signal.score, 6)}"
        )


def print_trades(trades):
    print(f"{'Time':<26} {'Symbol':<10} {'Side':<5} {'Qty':<16} {'Price':<14} {'Fee':<10} {'Order ID':<20}")
    print("-" * 105)
    for t in trades:
        print(
            f"{t.created_at.isoformat():<26} {t.symbol:<10} {t.side.value:<5} "
            f"{format_decimal(t.quantity, 8):<16} {format_decimal(t.price, 4):<14} "
            f"{format_decimal(t.fee, 4):<10} {t.exchange_order_id or '-':<20}"
        )


def list_signals(ledger, limit):
    signals = ledger.signals.find_latest(limit)
    if not signals:
        print("No signals")
        return
    print(f"\n{'Generated':<26} {'Symbol':<10} {'EMA12':<14} {'EMA26':<14} {'RSI':<8} {'Score':<10}")
    print("-" * 85)
    for s in signals:
        print(
            f"{s.generated_at.isoformat():<26} {s.symbol:<10} {format_decimal(s.ema12, 4):<14} "
            f"{format_decimal(s.ema26, 4):<14} {format_decimal(s.rsi, 2):<8} {format_decimal(s.score, 6):<10}"
        )


def list_alerts(ledger, limit):
    alerts = ledger.alerts.find_recent(limit)
    if not alerts:
        print("No alerts")
        return
    for a in alerts:
        flag = "sent" if a.sent else "suppressed"
        print(f"{a.created_at.isoformat()} [{a.severity.upper()}] {a.type} ({flag}): {a.title}")


def show_nav(ledger, limit):
    history = ledger.metrics.find_history("NAV", limit=limit)
    if not history:
        print("No NAV recorded")
        return
    fees = ledger.metrics.find_latest("TOTAL_FEES")
    print(f"Current NAV: ${format_decimal(history[0].value)} (as of {history[0].created_at.isoformat()})")
    if fees:
        print(f"Total fees: ${format_decimal(fees.value, 4)}")
    print(f"Peak NAV (last {len(history)}): ${format_decimal(max(m.value for m in history))}")


def show_pnl(ledger):
    results = fifo_pnl(ledger.trades.find_all())
    if not results:
        print("No trades")
        return
    print(f"\n{'Symbol':<10} {'Buys':<6} {'Sells':<6} {'Realized':<14} {'Fees':<10} {'Open Qty':<16}")
    print("-" * 65)
    for symbol, r in sorted(results.items()):
        print(
            f"{symbol:<10} {r.buy_count:<6} {r.sell_count:<6} {format_decimal(r.realized_pnl, 4):<14} "
            f"{format_decimal(r.fees, 4):<10} {format_decimal(r.open_quantity, 8):<16}"
        )
    totals = aggregate_pnl(results)
    print(
        f"\nTotal realized: ${format_decimal(totals['total_realized_pnl'], 4)} "
        f"fees: ${format_decimal(totals['total_fees'], 4)} "
        f"wins: {totals['win_count']} losses: {totals['loss_count']}"
    )


def main():
    parser = argparse.ArgumentParser(description="Ledger status CLI")
    parser.add_argument("--db", required=True, help="Path to SQLite database")

    sub = parser.add_subparsers(dest="cmd")

    lst = sub.add_parser("list")
    lst.add_argument("--bot-id", help="Only positions owned by this bot")
    show = sub.add_parser("show")
    show.add_argument("symbol")
    trades = sub.add_parser("trades")
    trades.add_argument("--limit", type=int, default=50)
    signals = sub.add_parser("signals")
    signals.add_argument("--limit", type=int, default=20)
    alerts = sub.add_parser("alerts")
    alerts.add_argument("--limit", type=int, default=20)
    nav = sub.add_parser("nav")
    nav.add_argument("--limit", type=int, default=100)
    sub.add_parser("pnl")

    args = parser.parse_args()

    db_path = Path(args.db)
    if not db_path.exists():
        print(f"Database not found: {db_path}")
        sys.exit(1)

    ledger = SQLiteLedger(db_path)

    if args.cmd == "list":
        list_positions(ledger, args.bot_id)
    elif args.cmd == "show":
        show_symbol(ledger, args.symbol)
    elif args.cmd == "trades":
        rows = ledger.trades.find_all(limit=args.limit)
        if rows:
            print_trades(rows)
        else:
            print("No trades")
    elif args.cmd == "signals":
        list_signals(ledger, args.limit)
    elif args.cmd == "alerts":
        list_alerts(ledger, args.limit)
    elif args.cmd == "nav":
        show_nav(ledger, args.limit)
    elif args.cmd == "pnl":
        show_pnl(ledger)
    else:
        parser.print_help()

    ledger.close()


if __name__ == "__main__":
    main()
