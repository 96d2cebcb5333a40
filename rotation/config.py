"""Configuration loader for the rotation engine.

Supports YAML format with environment variable interpolation. Strategy,
execution and alert settings can additionally be overridden one by one with
environment variables named after the upper-cased field (``MAX_POSITIONS``,
``FILL_TIMEOUT_MINUTES``, ``ALERTS_LOW_BALANCE_USD``...). Precedence is
environment, then YAML, then the dataclass default.
"""
import os
from dataclasses import dataclass, field, fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml

from .errors import ConfigError
from .models import DEFAULT_BOT_ID


@dataclass
class ExchangeConfig:
    """Kraken exchange settings."""
    base_url: str = "https://api.kraken.com"
    quote_currency: str = "USD"
    timeout: int = 10
    max_retries: int = 5
    max_backoff_seconds: float = 60.0


@dataclass
class StrategySettings:
    """Allocator and signal parameters. Percentages are in percent units (18 == 18%)."""
    universe: List[str] = field(default_factory=lambda: ["BTC-USD", "ETH-USD"])
    cadence_hours: int = 6
    max_positions: int = 3
    max_alloc_fraction: Decimal = Decimal("0.2")
    min_order_usd: Decimal = Decimal("5")
    min_balance_usd: Decimal = Decimal("20")
    rsi_low: Decimal = Decimal("40")
    rsi_high: Decimal = Decimal("70")
    ema_short: int = 12
    ema_long: int = 26
    volatility_pause_pct: Decimal = Decimal("18")
    cooldown_cycles: int = 2
    min_profit_usd: Decimal = Decimal("0.15")
    min_profit_pct: Decimal = Decimal("0")
    max_loss_usd: Decimal = Decimal("0")
    max_loss_pct: Decimal = Decimal("0")
    min_position_value_for_exit: Decimal = Decimal("1")
    profit_fee_buffer_pct: Decimal = Decimal("0.1")
    volatility_adjustment_factor: Decimal = Decimal("1.5")
    taker_fee_pct: Decimal = Decimal("0.0026")  # fraction, not percent
    maker_fee_pct: Decimal = Decimal("0.0016")
    cash_buffer_floor_usd: Decimal = Decimal("2.00")

    @property
    def cadence(self) -> str:
        return f"{self.cadence_hours}h"


@dataclass
class ExecutionSettings:
    """Order execution timings and identity."""
    maker_offset_pct: Decimal = Decimal("0.001")  # fraction
    fill_timeout_minutes: int = 15
    max_slippage_pct: Decimal = Decimal("0.005")  # fraction
    poll_interval_seconds: float = 30.0
    market_settle_seconds: float = 2.0
    bot_id: str = DEFAULT_BOT_ID
    bot_userref_prefix: str = "10"
    order_workers: int = 2


@dataclass
class AlertConfig:
    """Alert thresholds and per-type cooldowns (minutes)."""
    low_balance_usd: Decimal = Decimal("50")
    large_drawdown_pct: Decimal = Decimal("10")
    drawdown_window: int = 100
    webhook_url: Optional[str] = None
    cooldown_minutes: Dict[str, int] = field(default_factory=lambda: {
        "order_failure": 60,
        "exchange_unreachable": 30,
        "low_balance": 1440,
        "large_drawdown": 60,
        "job_failure": 60,
        "health_check_failed": 30,
    })


@dataclass
class RateLimitConfig:
    """Rate-limit policy settings."""
    public_per_second: int = 1
    private_per_second: int = 1
    orders_per_second: int = 1


@dataclass
class ScheduleConfig:
    """Timer periods for the background loops."""
    reconcile_interval_minutes: int = 60
    risk_check_interval_minutes: int = 15
    stale_order_interval_minutes: int = 5
    tick_seconds: float = 20.0


@dataclass
class PersistenceConfig:
    """Database and logging settings."""
    db_path: str = "rotation.db"
    log_file: str = "rotation.log"
    log_level: str = "INFO"


# Environment prefix per section; strategy/execution keys are bare names.
_ENV_PREFIX = {
    "strategy": "",
    "execution": "",
    "alerts": "ALERTS_",
}


def _coerce(raw, current):
    """Convert a raw YAML/env value to the type of the field's current value."""
    if raw is None:
        return None
    try:
        if isinstance(current, bool):
            if isinstance(raw, bool):
                return raw
            return str(raw).strip().lower() in ("1", "true", "yes", "on")
        if isinstance(current, Decimal):
            return Decimal(str(raw))
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
        if isinstance(current, list):
            if isinstance(raw, str):
                return [s.strip() for s in raw.split(",") if s.strip()]
            return [str(s).strip() for s in raw]
        if isinstance(current, dict):
            merged = dict(current)
            merged.update({k: int(v) for k, v in dict(raw).items()})
            return merged
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ConfigError(f"Invalid value {raw!r}: {e}")
    return raw


def _build(cls, data: Optional[Mapping]):
    obj = cls()
    for key, raw in (data or {}).items():
        if not hasattr(obj, key):
            raise ConfigError(f"Unknown setting '{key}' for {cls.__name__}")
        setattr(obj, key, _coerce(raw, getattr(obj, key)))
    return obj


def apply_env_overrides(obj, prefix: str = "", environ: Optional[Mapping[str, str]] = None):
    """Override dataclass fields from ``<PREFIX><FIELD_NAME>`` environment variables."""
    environ = os.environ if environ is None else environ
    for f in fields(obj):
        name = f"{prefix}{f.name.upper()}"
        if name in environ and environ[name] != "":
            setattr(obj, f.name, _coerce(environ[name], getattr(obj, f.name)))
    return obj


@dataclass
class TradingConfig:
    """Complete engine configuration."""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    strategy: StrategySettings = field(default_factory=StrategySettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)

    @classmethod
    def from_yaml(cls, config_path: str, environ: Optional[Mapping[str, str]] = None) -> "TradingConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file
            environ: Environment mapping (defaults to ``os.environ``)

        Returns:
            TradingConfig instance

        Example YAML:
            strategy:
              universe: [BTC-USD, ETH-USD, SOL-USD]
              cadence_hours: 6
              max_alloc_fraction: 0.2
            alerts:
              webhook_url: "${ALERT_WEBHOOK_URL}"
            persistence:
              db_path: "${STATE_DIR}/rotation.db"
        """
        environ = os.environ if environ is None else environ
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        data = yaml.safe_load(raw) or {}
        return cls.from_dict(data, environ=environ)

    @classmethod
    def from_dict(cls, data: Mapping, environ: Optional[Mapping[str, str]] = None) -> "TradingConfig":
        cfg = cls(
            exchange=_build(ExchangeConfig, data.get("exchange")),
            strategy=_build(StrategySettings, data.get("strategy")),
            execution=_build(ExecutionSettings, data.get("execution")),
            alerts=_build(AlertConfig, data.get("alerts")),
            rate_limit=_build(RateLimitConfig, data.get("rate_limit")),
            schedule=_build(ScheduleConfig, data.get("schedule")),
            persistence=_build(PersistenceConfig, data.get("persistence")),
        )
        for section, prefix in _ENV_PREFIX.items():
            apply_env_overrides(getattr(cfg, section), prefix, environ)
        cfg.validate()
        return cfg

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TradingConfig":
        """Defaults plus environment overrides, for running without a YAML file."""
        return cls.from_dict({}, environ=environ)

    def validate(self) -> None:
        s = self.strategy
        if not s.universe:
            raise ConfigError("UNIVERSE must contain at least one symbol")
        if not 1 <= s.cadence_hours <= 24:
            raise ConfigError(f"CADENCE_HOURS must be between 1 and 24, got {s.cadence_hours}")
        if not Decimal("0") < s.max_alloc_fraction <= Decimal("1"):
            raise ConfigError(f"MAX_ALLOC_FRACTION must be in (0, 1], got {s.max_alloc_fraction}")
        if s.rsi_low > s.rsi_high:
            raise ConfigError(f"RSI_LOW ({s.rsi_low}) must not exceed RSI_HIGH ({s.rsi_high})")
        if s.ema_short >= s.ema_long:
            raise ConfigError("EMA_SHORT must be shorter than EMA_LONG")
        if s.max_positions < 0:
            raise ConfigError("MAX_POSITIONS must be non-negative")
        if self.execution.fill_timeout_minutes <= 0:
            raise ConfigError("FILL_TIMEOUT_MINUTES must be positive")

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        def dump(obj) -> dict:
            out = {}
            for f in fields(obj):
                value = getattr(obj, f.name)
                out[f.name] = str(value) if isinstance(value, Decimal) else value
            return out

        data = {
            "exchange": dump(self.exchange),
            "strategy": dump(self.strategy),
            "execution": dump(self.execution),
            "alerts": dump(self.alerts),
            "rate_limit": dump(self.rate_limit),
            "schedule": dump(self.schedule),
            "persistence": dump(self.persistence),
        }

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
