"""Engine wiring and process entry point.

Every component is constructed once here and passed by reference.

Usage:
    python -m rotation.runner --config config.yaml
    python -m rotation.runner --config config.yaml --once reconcile
"""
import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from .alerts import AlertService, WebhookNotifier
from .allocator import PortfolioAllocator
from .config import TradingConfig
from .exchange import ExchangeAdapter, LotSizeCache
from .execution import OrderExecutor
from .jobs import JobHandlers, TaskQueue, Topic
from .kraken_adapter import KrakenAdapter
from .logging_setup import logger, setup_logging
from .persistence_sqlite import SQLiteLedger
from .rate_limit_policy import RateLimitManager
from .reconcile import Reconciler
from .scheduler import Scheduler
from .secrets import load_credentials
from .signals import SignalEngine


class Engine:
    """All long-lived components of one bot plus the manual trigger surface."""

    def __init__(self, config: TradingConfig, exchange: ExchangeAdapter, ledger: SQLiteLedger):
        self.config = config
        self.exchange = exchange
        self.ledger = ledger
        quote = config.exchange.quote_currency

        notifier = WebhookNotifier(config.alerts.webhook_url) if config.alerts.webhook_url else None
        self.alerts = AlertService(ledger, config.alerts, notifier)
        self.lot_sizes = LotSizeCache(exchange)
        self.signal_engine = SignalEngine(exchange, ledger, config.strategy)
        self.executor = OrderExecutor(exchange, ledger, self.alerts, config.execution, lot_sizes=self.lot_sizes)
        self.allocator = PortfolioAllocator(
            exchange,
            ledger,
            self.signal_engine,
            config.strategy,
            bot_id=config.execution.bot_id,
            quote_currency=quote,
            lot_sizes=self.lot_sizes,
            busy_symbols=self.executor.busy_symbols,
        )
        self.reconciler = Reconciler(
            exchange,
            ledger,
            self.alerts,
            config.strategy,
            config.execution,
            config.alerts,
            quote_currency=quote,
            in_flight=self.executor.in_flight,
        )
        self.queue = TaskQueue(self.alerts, workers={Topic.ORDER_EXECUTE: config.execution.order_workers})
        self.handlers = JobHandlers(self.queue, self.signal_engine, self.allocator, self.executor, self.reconciler, exchange)
        self.handlers.register()
        self.scheduler = Scheduler(self.queue, self.handlers, config.strategy, config.schedule)

    # --- trigger surface ---
    def toggle_strategy(self, enabled: bool) -> bool:
        self.allocator.toggle(enabled)
        return self.allocator.is_enabled()

    async def trigger_reconcile(self):
        return await self.queue.enqueue(Topic.RECONCILE)

    async def trigger_signal_poll(self):
        return await self.queue.enqueue(Topic.SIGNAL_POLL)

    async def health_check(self) -> bool:
        """Probe the exchange and the ledger once; each failing component is alerted."""
        healthy = True
        probe = self.config.strategy.universe[0]
        try:
            await self.exchange.get_ticker(probe)
        except Exception as e:
            logger.error(f"Health check failed | component=exchange symbol={probe} error={e}")
            await self.alerts.alert_health_check_failed("exchange", str(e))
            healthy = False
        try:
            await asyncio.to_thread(self.ledger.metrics.find_latest, "NAV")
        except Exception as e:
            logger.error(f"Health check failed | component=ledger error={e}")
            await self.alerts.alert_health_check_failed("ledger", str(e))
            healthy = False
        return healthy

    def status(self) -> dict:
        return {
            "enabled": self.allocator.is_enabled(),
            "queue_depth": self.queue.depth(),
            "in_flight": {s: side.value for s, side in self.executor.in_flight().items()},
            "cooldowns": dict(self.allocator.state.cooldowns),
        }

    # --- lifecycle ---
    async def start(self) -> None:
        await self.queue.start()
        self.scheduler.prime()
        await self.health_check()
        await self.trigger_reconcile()

    async def run_forever(self) -> None:
        await self.start()
        try:
            await self.scheduler.run()
        finally:
            await self.shutdown()

    async def run_once(self, unit: str) -> None:
        """Run a single unit (and whatever it enqueues) to completion."""
        topic = {
            "reconcile": Topic.RECONCILE,
            "poll": Topic.SIGNAL_POLL,
            "evaluate": Topic.STRATEGY_EVALUATE,
        }[unit]
        await self.queue.start()
        try:
            await self.queue.enqueue(topic)
            await self.queue.join()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        self.scheduler.stop()
        await self.queue.stop()


async def _amain(config: TradingConfig, once: Optional[str]) -> None:
    creds = load_credentials()
    ledger = SQLiteLedger(Path(config.persistence.db_path))
    adapter = KrakenAdapter(
        creds.api_key,
        creds.api_secret,
        base_url=config.exchange.base_url,
        quote_currency=config.exchange.quote_currency,
        timeout=config.exchange.timeout,
        max_retries=config.exchange.max_retries,
        max_backoff_seconds=config.exchange.max_backoff_seconds,
        maker_fee=config.strategy.maker_fee_pct,
        rate_limiter=RateLimitManager.from_config(config.rate_limit),
    )
    try:
        async with adapter:
            engine = Engine(config, adapter, ledger)
            if once:
                await engine.run_once(once)
            else:
                await engine.run_forever()
    finally:
        ledger.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Trend-rotation trading engine")
    parser.add_argument("--config", help="Path to YAML config (defaults plus environment when omitted)")
    parser.add_argument("--once", choices=["reconcile", "poll", "evaluate"], help="Run a single unit and exit")
    args = parser.parse_args(argv)

    config = TradingConfig.from_yaml(args.config) if args.config else TradingConfig.from_env()
    setup_logging(config.persistence.log_file, config.persistence.log_level)
    logger.info(f"Starting engine | bot_id={config.execution.bot_id} universe={config.strategy.universe}")
    try:
        asyncio.run(_amain(config, args.once))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
