"""
Reconciliation engine.

Keeps the position ledger consistent with the exchange's balances. One run:

    A. balance sync  - track every held asset, correct drifted quantities
    B. drift closing - close ledger positions whose balance is gone
    NAV              - quote balance + mark-to-market, persisted as metrics
    stale orders     - cancel open orders older than the fill timeout

A failed or empty balance fetch aborts the run before anything is written;
stale data is preferred over closing positions on absent data.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Set, Tuple

from .alerts import AlertService
from .config import AlertConfig, ExecutionSettings, StrategySettings
from .exchange import ExchangeAdapter, order_age, split_symbol
from .execution import order_belongs_to_bot
from .logging_setup import component_logger
from .models import Balance, OpenOrder, Position, Side, Ticker, utcnow
from .pnl import fifo_pnl

log = component_logger("reconcile")

NAV_KEY = "NAV"
TOTAL_FEES_KEY = "TOTAL_FEES"
REALIZED_PNL_KEY = "REALIZED_PNL"

NOISE_TOLERANCE = Decimal("0.0001")
CHURN_TOLERANCE = Decimal("0.01")
DUST_THRESHOLD = Decimal("0.00001")

ASSET_ALIASES = {
    "XDG": "DOGE",
    "XXDG": "DOGE",
    "XXRP": "XRP",
    "XBT": "BTC",
    "XXBT": "BTC",
    "XETH": "ETH",
    "XADA": "ADA",
    "XDOT": "DOT",
    "XAVAX": "AVAX",
    "XSOL": "SOL",
    "ZUSD": "USD",
}

# Codes that start with X/Z but are not exchange prefixes
_UNPREFIXED = {"XRP", "XLM", "XTZ", "ZEC", "ZRX", "XMR"}


def normalize_asset_code(asset: str) -> str:
    """Map an exchange asset code to its common ticker.

        >>> normalize_asset_code("XXBT")
        'BTC'
        >>> normalize_asset_code("ZUSD")
        'USD'
        >>> normalize_asset_code("sol")
        'SOL'
    """
    if not asset:
        return asset
    upper = asset.upper()
    if upper in ASSET_ALIASES:
        return ASSET_ALIASES[upper]
    normalized = upper
    for _ in range(2):
        if normalized in _UNPREFIXED or len(normalized) <= 3:
            break
        if normalized[0] in ("X", "Z"):
            normalized = normalized[1:]
    return ASSET_ALIASES.get(normalized, normalized)


@dataclass
class ReconcileReport:
    job_id: str
    aborted: bool = False
    abort_reason: str = ""
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    closed: List[str] = field(default_factory=list)
    skipped_pending: List[str] = field(default_factory=list)
    unresolved_assets: List[str] = field(default_factory=list)
    nav: Optional[Decimal] = None
    total_fees: Optional[Decimal] = None
    realized_pnl: Optional[Decimal] = None
    cancelled_orders: List[str] = field(default_factory=list)


class Reconciler:
    def __init__(
        self,
        exchange: ExchangeAdapter,
        ledger,
        alerts: AlertService,
        strategy: StrategySettings,
        execution: ExecutionSettings,
        alert_config: AlertConfig,
        *,
        quote_currency: str = "USD",
        in_flight: Optional[Callable[[], Dict[str, Side]]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.exchange = exchange
        self.ledger = ledger
        self.alerts = alerts
        self.strategy = strategy
        self.execution = execution
        self.alert_config = alert_config
        self.quote_currency = quote_currency
        self.in_flight = in_flight or (lambda: {})
        self.clock = clock

    @property
    def bot_id(self) -> str:
        return self.execution.bot_id

    async def run(self, job_id: Optional[str] = None) -> ReconcileReport:
        """Full reconciliation: balance sync, drift closing, NAV, stale orders."""
        report = ReconcileReport(job_id=job_id or uuid.uuid4().hex[:8])
        bound = log.bind(job_id=report.job_id)
        bound.info("Starting reconciliation")

        try:
            balances = await self.exchange.get_all_balances()
        except Exception as e:
            report.aborted = True
            report.abort_reason = f"balance fetch failed: {e}"
            bound.error(f"Reconciliation aborted, balance fetch failed | error={e}")
            await self.alerts.alert_exchange_unreachable(str(e))
            return report
        if not balances:
            report.aborted = True
            report.abort_reason = "empty balances"
            bound.warning("Reconciliation aborted, exchange returned no balances")
            return report

        created = await self.sync_balances(balances, report, bound)
        await self.close_drifted(balances, created, report, bound)
        await self.update_nav(report, bound)
        report.cancelled_orders = await self.cancel_stale_orders(job_id=report.job_id)
        bound.info(
            f"Reconciliation complete | created={report.created} updated={report.updated} "
            f"closed={report.closed} nav={report.nav} cancelled={len(report.cancelled_orders)}"
        )
        return report

    # --- phase A ---
    def _candidate_symbols(self, raw: str, normalized: str) -> List[str]:
        by_base: Dict[str, str] = {}
        for symbol in self.strategy.universe:
            base, _ = split_symbol(symbol)
            by_base.setdefault(base, symbol)

        candidates: List[str] = []
        for c in (
            by_base.get(raw),
            by_base.get(normalized),
            f"{normalized}-{self.quote_currency}",
            f"{raw}-{self.quote_currency}",
        ):
            if c and c not in candidates:
                candidates.append(c)
        return candidates

    async def _resolve_symbol(self, raw: str, normalized: str, cache: Dict[str, Ticker]) -> Optional[Tuple[str, Ticker]]:
        for candidate in self._candidate_symbols(raw, normalized):
            if candidate in cache:
                return candidate, cache[candidate]
            try:
                ticker = await self.exchange.get_ticker(candidate)
            except Exception:
                continue
            cache[candidate] = ticker
            return candidate, ticker
        return None

    async def sync_balances(self, balances: Dict[str, Balance], report: ReconcileReport, bound=log) -> Set[str]:
        """Phase A. Returns the symbols whose positions were created in this pass."""
        positions = await asyncio.to_thread(self.ledger.positions.find_open, self.bot_id)
        by_symbol: Dict[str, Position] = {}
        for pos in positions:
            by_symbol.setdefault(pos.symbol, pos)

        created: Set[str] = set()
        tickers: Dict[str, Ticker] = {}
        for raw, balance in balances.items():
            asset = normalize_asset_code(raw)
            if asset == self.quote_currency:
                continue
            quantity = balance.total
            if quantity <= 0:
                continue

            resolved = await self._resolve_symbol(raw, asset, tickers)
            if resolved is None:
                bound.debug(f"Skipping asset, no matching symbol | asset={raw} balance={quantity}")
                report.unresolved_assets.append(raw)
                continue
            symbol, ticker = resolved

            existing = by_symbol.get(symbol)
            if existing is not None:
                diff = abs(existing.quantity - quantity)
                if diff > NOISE_TOLERANCE:
                    bound.warning(
                        f"Position quantity mismatch | symbol={symbol} ledger_qty={existing.quantity} "
                        f"exchange_qty={quantity} diff={diff}"
                    )
                    if diff > CHURN_TOLERANCE:
                        await asyncio.to_thread(self.ledger.positions.update_quantity, existing.id, quantity)
                        existing.quantity = quantity
                        report.updated.append(symbol)
                        bound.info(f"Updated position quantity | symbol={symbol} new_qty={quantity}")
                continue

            if symbol in created:
                continue
            position = Position(symbol=symbol, quantity=quantity, entry_price=ticker.price, bot_id=self.bot_id)
            await asyncio.to_thread(self.ledger.positions.create, position)
            by_symbol[symbol] = position
            created.add(symbol)
            report.created.append(symbol)
            bound.info(f"Created missing position from exchange balance | symbol={symbol} qty={quantity} entry_price={ticker.price}")
        return created

    # --- phase B ---
    async def _pending_sells(self, bound) -> Optional[Set[str]]:
        try:
            orders = await self.exchange.get_open_orders()
        except Exception as e:
            bound.warning(f"Could not fetch open orders, skipping drift closing | error={e}")
            return None
        pending = {o.symbol for o in orders if o.side == Side.SELL}
        pending.update(sym for sym, side in self.in_flight().items() if side == Side.SELL)
        return pending

    @staticmethod
    def _balance_for(balances: Dict[str, Balance], code: str) -> Decimal:
        found = Decimal("0")
        for key in (code, code.upper(), code.lower()):
            bal = balances.get(key)
            if bal is not None:
                found = max(found, bal.total)
        return found

    async def close_drifted(self, balances: Dict[str, Balance], created: Set[str], report: ReconcileReport, bound=log) -> None:
        """Phase B: close positions whose exchange balance is below dust."""
        pending = await self._pending_sells(bound)
        if pending is None:
            return

        # Balances keyed by normalized code as well as by the exchange's code
        normalized: Dict[str, Balance] = {}
        for raw, bal in balances.items():
            key = normalize_asset_code(raw)
            prev = normalized.get(key)
            if prev is None or bal.total > prev.total:
                normalized[key] = bal

        positions = await asyncio.to_thread(self.ledger.positions.find_open, self.bot_id)
        for pos in positions:
            if pos.symbol in created:
                continue
            if pos.symbol in pending:
                bound.debug(f"Skipping drift check, sell pending | symbol={pos.symbol}")
                report.skipped_pending.append(pos.symbol)
                continue
            raw_base, _ = split_symbol(pos.symbol)
            base = normalize_asset_code(raw_base)
            found = max(self._balance_for(normalized, base), self._balance_for(balances, raw_base))
            if found < DUST_THRESHOLD:
                bound.warning(
                    f"Position exists in ledger but not on exchange, closing | symbol={pos.symbol} "
                    f"ledger_qty={pos.quantity} exchange_balance={found} assets={sorted(balances)}"
                )
                await asyncio.to_thread(self.ledger.positions.close, pos.id)
                report.closed.append(pos.symbol)

    # --- NAV ---
    async def update_nav(self, report: ReconcileReport, bound=log) -> Optional[Decimal]:
        try:
            quote = await self.exchange.get_balance(self.quote_currency)
        except Exception as e:
            bound.error(f"Could not fetch quote balance, NAV not updated | error={e}")
            return None

        nav = quote.free + quote.locked
        positions = await asyncio.to_thread(self.ledger.positions.find_open, self.bot_id)
        for pos in positions:
            try:
                ticker = await self.exchange.get_ticker(pos.symbol)
            except Exception as e:
                bound.error(f"Error getting ticker, position omitted from NAV | symbol={pos.symbol} error={e}")
                continue
            nav += pos.quantity * ticker.price

        trades = await asyncio.to_thread(self.ledger.trades.find_all)
        total_fees = sum((t.fee for t in trades), Decimal("0"))
        realized = sum((r.realized_pnl for r in fifo_pnl(trades).values()), Decimal("0"))

        await asyncio.to_thread(self.ledger.metrics.create, TOTAL_FEES_KEY, total_fees)
        await asyncio.to_thread(self.ledger.metrics.create, REALIZED_PNL_KEY, realized)
        await asyncio.to_thread(self.ledger.metrics.create, NAV_KEY, nav)
        report.nav = nav
        report.total_fees = total_fees
        report.realized_pnl = realized
        bound.info(f"NAV updated | nav={nav:.2f} total_fees={total_fees:.4f} realized_pnl={realized:.4f} positions={len(positions)}")

        if nav < self.alert_config.low_balance_usd:
            await self.alerts.alert_low_balance(nav, self.alert_config.low_balance_usd)

        history = await asyncio.to_thread(
            self.ledger.metrics.find_history, NAV_KEY, None, None, self.alert_config.drawdown_window
        )
        if history:
            peak = max(m.value for m in history)
            if peak > 0:
                drawdown = (peak - nav) / peak * 100
                if drawdown >= self.alert_config.large_drawdown_pct:
                    await self.alerts.alert_large_drawdown(drawdown, nav, peak)
        return nav

    # --- stale orders ---
    async def cancel_stale_orders(self, job_id: Optional[str] = None) -> List[str]:
        """Cancel open orders older than the fill timeout. Never raises."""
        bound = log.bind(job_id=job_id)
        threshold = timedelta(minutes=self.execution.fill_timeout_minutes)
        try:
            orders: List[OpenOrder] = await self.exchange.get_open_orders()
        except Exception as e:
            bound.error(f"Error checking for stale orders | error={e}")
            return []

        now = self.clock()
        cancelled = []
        for order in orders:
            if not order_belongs_to_bot(order, self.execution.bot_userref_prefix):
                continue
            age = order_age(order, now)
            if age <= threshold:
                continue
            bound.warning(
                f"Found stale order, cancelling | order_id={order.order_id} symbol={order.symbol} "
                f"side={order.side.value} age_minutes={int(age.total_seconds() // 60)}"
            )
            try:
                ok = await self.exchange.cancel_order(order.order_id)
            except Exception as e:
                bound.warning(f"Error cancelling stale order | order_id={order.order_id} error={e}")
                continue
            if ok:
                cancelled.append(order.order_id)
            else:
                bound.warning(f"Stale order cancel refused (may already be filled) | order_id={order.order_id}")
        if cancelled:
            bound.info(f"Cancelled {len(cancelled)} stale order(s)")
        return cancelled
