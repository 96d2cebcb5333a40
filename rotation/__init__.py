"""
Trend-Rotation Spot Trading Engine.

An unattended spot trading bot for Kraken that rotates capital into the
strongest-trending assets of a fixed universe:
- EMA(12)/EMA(26) trend ratio with an RSI(14) tie-break as the ranking score
- Top-N allocation with cooldowns, volatility pause and cumulative cash accounting
- Fee-aware profit targets and volatility-widened stop losses
- Maker-biased limit entries with a slippage-guarded market fallback
- Hourly reconciliation of the ledger against exchange balances, NAV metrics
- SQLite ledger with versioned migrations
- asyncio task queue with a self-timed scheduler
- Structured logging via loguru
- Configuration-driven (YAML + environment)

Core Modules:
    indicators: EMA/RSI/score math
    signals: Signal engine (per-asset scoring and persistence)
    allocator: Portfolio allocator (ranking, sizing, exits, entries)
    order_state: Execution state machine
    execution: Order executor (limit, poll, cancel, market fallback)
    reconcile: Reconciliation engine (balance sync, drift, NAV, stale orders)
    jobs: Task queue and job handlers
    scheduler: Timer loop
    persistence_sqlite: Ledger store
    kraken_adapter: Kraken REST integration
    config: Configuration loading and validation
    secrets: Credential management

Example:
    >>> from rotation.config import TradingConfig
    >>> from rotation.persistence_sqlite import SQLiteLedger
    >>> from rotation.runner import Engine
    >>>
    >>> config = TradingConfig.from_yaml("config.yaml")
    >>> ledger = SQLiteLedger(config.persistence.db_path)
    >>> engine = Engine(config, adapter, ledger)
"""

__version__ = "0.1.0"
__all__ = [
    "indicators",
    "signals",
    "allocator",
    "order_state",
    "execution",
    "reconcile",
    "jobs",
    "scheduler",
    "persistence_sqlite",
    "kraken_adapter",
    "config",
    "secrets",
    "alerts",
    "pnl",
]
