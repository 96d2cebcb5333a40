"""Shared fixtures: tmp ledger, in-memory exchange, settings and a fake clock."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from rotation.alerts import AlertService
from rotation.config import AlertConfig, ExecutionSettings, StrategySettings
from rotation.exchange import InMemoryExchange
from rotation.models import Candle
from rotation.persistence_sqlite import SQLiteLedger

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def build_candles(closes, hours=6, start=T0):
    return [
        Candle(time=start + timedelta(hours=hours * i), open=c, high=c, low=c, close=c, volume=Decimal("1"))
        for i, c in enumerate(closes)
    ]


def rising_closes(n=30, start=100, step=1):
    return [Decimal(start) + Decimal(step) * i for i in range(n)]


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is awaited."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def candles():
    return build_candles


@pytest.fixture
def rising():
    return rising_closes


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def ledger(tmp_path: Path):
    led = SQLiteLedger(tmp_path / "ledger.db")
    yield led
    led.close()


@pytest.fixture
def exchange():
    return InMemoryExchange()


@pytest.fixture
def strategy():
    return StrategySettings(
        universe=["BTC-USD", "ETH-USD", "SOL-USD"],
        cadence_hours=6,
        max_positions=2,
        rsi_low=Decimal("40"),
        rsi_high=Decimal("100"),
        cooldown_cycles=2,
    )


@pytest.fixture
def execution_settings():
    return ExecutionSettings(
        maker_offset_pct=Decimal("0.001"),
        fill_timeout_minutes=15,
        max_slippage_pct=Decimal("0.005"),
        poll_interval_seconds=30.0,
        market_settle_seconds=2.0,
        bot_id="test-bot",
        bot_userref_prefix="10",
    )


@pytest.fixture
def alert_config():
    return AlertConfig(low_balance_usd=Decimal("50"), large_drawdown_pct=Decimal("10"))


@pytest.fixture
def alerts(ledger, alert_config):
    return AlertService(ledger, alert_config)
