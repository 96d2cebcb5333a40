"""Realized P&L from the trade ledger (FIFO lot matching)."""
from collections import defaultdict, deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Deque, Dict, Iterable, List

from .models import Side, Trade


@dataclass
class Lot:
    """Open buy quantity still waiting to be matched by a sell."""
    quantity: Decimal
    price: Decimal
    fee_per_unit: Decimal


@dataclass
class SymbolPnL:
    """FIFO result for one symbol."""
    symbol: str
    realized_pnl: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")
    buy_count: int = 0
    sell_count: int = 0
    open_quantity: Decimal = Decimal("0")
    unmatched_sell_quantity: Decimal = Decimal("0")  # sells of balances bought outside the ledger
    open_lots: List[Lot] = field(default_factory=list)

    @property
    def cost_basis(self) -> Decimal:
        return sum((lot.quantity * lot.price for lot in self.open_lots), Decimal("0"))


def fifo_pnl(trades: Iterable[Trade]) -> Dict[str, SymbolPnL]:
    """Match sells against the oldest buys per symbol.

    Realized P&L is net of the buy fees of the matched quantity and the full
    sell fee. Trades must be ordered oldest first.

    Args:
        trades: Ledger trades, oldest first

    Returns:
        Dict mapping symbol to its SymbolPnL
    """
    lots: Dict[str, Deque[Lot]] = defaultdict(deque)
    out: Dict[str, SymbolPnL] = {}

    for t in trades:
        res = out.setdefault(t.symbol, SymbolPnL(symbol=t.symbol))
        res.fees += t.fee
        if t.side == Side.BUY:
            res.buy_count += 1
            if t.quantity > 0:
                lots[t.symbol].append(Lot(t.quantity, t.price, t.fee / t.quantity))
            continue

        res.sell_count += 1
        remaining = t.quantity
        queue = lots[t.symbol]
        while remaining > 0 and queue:
            lot = queue[0]
            matched = min(lot.quantity, remaining)
            res.realized_pnl += (t.price - lot.price) * matched - lot.fee_per_unit * matched
            lot.quantity -= matched
            remaining -= matched
            if lot.quantity <= 0:
                queue.popleft()
        if remaining > 0:
            res.unmatched_sell_quantity += remaining
        res.realized_pnl -= t.fee

    for symbol, res in out.items():
        res.open_lots = list(lots[symbol])
        res.open_quantity = sum((lot.quantity for lot in res.open_lots), Decimal("0"))
    return out


def aggregate_pnl(results: Dict[str, SymbolPnL]) -> dict:
    """Aggregate per-symbol FIFO results.

    Returns:
        Dict with totals and win/loss counts per symbol
    """
    if not results:
        return {
            "symbols": 0,
            "total_realized_pnl": Decimal("0"),
            "total_fees": Decimal("0"),
            "win_count": 0,
            "loss_count": 0,
        }
    closed = [r for r in results.values() if r.sell_count > 0]
    return {
        "symbols": len(results),
        "total_realized_pnl": sum((r.realized_pnl for r in results.values()), Decimal("0")),
        "total_fees": sum((r.fees for r in results.values()), Decimal("0")),
        "win_count": len([r for r in closed if r.realized_pnl > 0]),
        "loss_count": len([r for r in closed if r.realized_pnl < 0]),
    }
