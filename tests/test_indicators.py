"""Tests for the indicator math and the signal score."""
from decimal import Decimal

import pytest

from rotation.errors import InsufficientCandlesError
from rotation.indicators import (
    compute_indicators,
    ema,
    ema_series,
    lookback_return_pct,
    rsi,
    score,
)


def test_ema_series_seeds_with_sma():
    series = ema_series([Decimal(1), Decimal(2), Decimal(3)], 2)
    assert series[0] == Decimal("1.5")
    assert abs(series[1] - Decimal("2.5")) < Decimal("1e-20")


def test_ema_needs_period_values():
    assert ema([Decimal(1)], 2) is None


def test_rsi_all_gains_is_100(rising):
    assert rsi(rising(20), 14) == Decimal("100")


def test_rsi_all_losses_is_0():
    closes = [Decimal(100 - i) for i in range(20)]
    assert rsi(closes, 14) == Decimal("0")


def test_rsi_needs_period_plus_one_values():
    assert rsi([Decimal(1)] * 14, 14) is None


def test_score_applies_bonus_inside_neutral_band():
    assert score(Decimal("110"), Decimal("100"), Decimal("50")) == Decimal("1.1") * Decimal("1.05")
    assert score(Decimal("110"), Decimal("100"), Decimal("45")) == Decimal("1.1") * Decimal("1.05")
    assert score(Decimal("110"), Decimal("100"), Decimal("55")) == Decimal("1.1") * Decimal("1.05")


def test_score_without_bonus_outside_band():
    assert score(Decimal("110"), Decimal("100"), Decimal("60")) == Decimal("1.1")
    assert score(Decimal("110"), Decimal("100"), Decimal("44.99")) == Decimal("1.1")


def test_compute_indicators_rejects_short_history(candles, rising):
    with pytest.raises(InsufficientCandlesError) as exc:
        compute_indicators(candles(rising(25)), symbol="BTC-USD")
    assert exc.value.have == 25
    assert exc.value.need == 26


def test_compute_indicators_accepts_exactly_26(candles, rising):
    bundle = compute_indicators(candles(rising(26)))
    assert bundle.ema_long is not None
    assert bundle.last_close == Decimal(125)


def test_score_is_deterministic_for_identical_closes(candles):
    closes = [Decimal(100) + Decimal(i % 7) - Decimal(i % 3) for i in range(40)]
    first = compute_indicators(candles(closes))
    second = compute_indicators(candles(list(closes), hours=1))
    assert first.score == second.score
    assert first.rsi == second.rsi


def test_rising_closes_trend_up_with_rsi_above_50(candles, rising):
    bundle = compute_indicators(candles(rising(30)))
    assert bundle.ema_short > bundle.ema_long
    assert bundle.rsi > 50
    assert bundle.trend_up


def test_lookback_return_pct(candles):
    closes = [Decimal(100)] * 5 + [Decimal(110)]
    assert lookback_return_pct(candles(closes), 4) == Decimal(10)
    assert lookback_return_pct([], 4) == Decimal(0)
