"""Tests for lot-size rounding, price rounding and the lot-size cache."""
from decimal import Decimal

import pytest

from rotation.exchange import (
    DEFAULT_LOT_SIZE,
    InMemoryExchange,
    LotSizeCache,
    round_price,
    round_to_lot_size,
    split_symbol,
)
from rotation.models import LotSizeInfo, Side

LOTS = [
    DEFAULT_LOT_SIZE,
    LotSizeInfo(Decimal("0.01"), 2, Decimal("0.01")),
    LotSizeInfo(Decimal("0.003"), 3, Decimal("0.003")),
    LotSizeInfo(Decimal("1"), 0, Decimal("1")),
]

QUANTITIES = [
    Decimal("0"),
    Decimal("-1.5"),
    Decimal("0.002"),
    Decimal("0.129"),
    Decimal("1"),
    Decimal("3.14159265358979"),
    Decimal("1234.56789"),
]


@pytest.mark.parametrize("lot", LOTS)
def test_lot_rounding_never_increases_and_is_idempotent(lot):
    for qty in QUANTITIES:
        once = round_to_lot_size(qty, lot)
        assert once <= max(qty, Decimal("0"))
        assert once >= 0
        assert round_to_lot_size(once, lot) == once


@pytest.mark.parametrize(
    "qty,expected",
    [
        (Decimal("1"), Decimal("0.999")),
        (Decimal("0.005"), Decimal("0.003")),
        (Decimal("0.002"), Decimal("0")),
        (Decimal("0.006"), Decimal("0.006")),
    ],
)
def test_non_decimal_step_floors_to_multiple(qty, expected):
    lot = LotSizeInfo(Decimal("0.003"), 3, Decimal("0.003"))
    assert round_to_lot_size(qty, lot) == expected


def test_non_positive_quantity_rounds_to_zero():
    assert round_to_lot_size(Decimal("0"), DEFAULT_LOT_SIZE) == 0
    assert round_to_lot_size(Decimal("-2"), DEFAULT_LOT_SIZE) == 0


def test_round_price_moves_away_from_spread():
    assert round_price(Decimal("100.129"), 2, Side.BUY) == Decimal("100.12")
    assert round_price(Decimal("100.121"), 2, Side.SELL) == Decimal("100.13")
    assert round_price(Decimal("100.121"), None, Side.SELL) == Decimal("100.121")


def test_split_symbol():
    assert split_symbol("ETH-USD") == ("ETH", "USD")
    with pytest.raises(ValueError):
        split_symbol("ETHUSD")


@pytest.mark.asyncio
async def test_lot_size_cache_refreshes_after_ttl(fake_clock):
    exchange = InMemoryExchange()
    exchange.lot_sizes["BTC-USD"] = LotSizeInfo(Decimal("0.0001"), 4, Decimal("0.0001"))
    cache = LotSizeCache(exchange, ttl_seconds=60, clock=fake_clock)

    first = await cache.get("BTC-USD")
    await cache.get("BTC-USD")
    assert first.lot_decimals == 4
    assert len(exchange.calls_to("get_lot_size_info")) == 1

    fake_clock.now += 61
    await cache.get("BTC-USD")
    assert len(exchange.calls_to("get_lot_size_info")) == 2

    cache.invalidate("BTC-USD")
    await cache.get("BTC-USD")
    assert len(exchange.calls_to("get_lot_size_info")) == 3
