"""
Domain records shared by the engine.

Every price, quantity and money amount is a Decimal; every timestamp is a
timezone-aware UTC datetime. Ledger records (Position, Trade, Signal, Metric,
Alert) carry an optional ``id`` assigned by the store on insert.

Examples:
    >>> from decimal import Decimal
    >>> pos = Position(symbol="BTC-USD", quantity=Decimal("0.01"), entry_price=Decimal("60000"))
    >>> pos.entry_value
    Decimal('600.00')
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, getcontext
from enum import Enum
from typing import Any, Dict, Optional

getcontext().prec = 28

DEFAULT_BOT_ID = "slow-joe"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderStatus(str, Enum):
    """Order status as reported by the exchange adapter."""

    FILLED = "filled"
    PARTIAL = "partial"
    PENDING = "pending"
    CANCELLED = "cancelled"


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class Candle:
    time: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = Decimal("0")


@dataclass
class Ticker:
    symbol: str
    price: Decimal
    bid: Decimal
    ask: Decimal


@dataclass
class Balance:
    asset: str
    free: Decimal
    locked: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.free + self.locked


@dataclass
class OrderResult:
    """Status snapshot of a single exchange order."""

    order_id: str
    status: OrderStatus
    filled_quantity: Optional[Decimal] = None
    filled_price: Optional[Decimal] = None
    fee: Optional[Decimal] = None

    @property
    def is_filled(self) -> bool:
        return self.status == OrderStatus.FILLED


@dataclass
class LotSizeInfo:
    """Exchange quantity constraints for one trading pair.

    Attributes:
        lot_size: Smallest tradable quantity increment
        lot_decimals: Decimal places allowed on the quantity
        min_order_size: Exchange minimum order quantity
        price_decimals: Decimal places allowed on the limit price (None if unknown)
    """

    lot_size: Decimal
    lot_decimals: int
    min_order_size: Decimal
    price_decimals: Optional[int] = None


@dataclass
class OpenOrder:
    order_id: str
    symbol: str
    side: Side
    quantity: Decimal
    remaining_quantity: Decimal
    price: Decimal
    opened_at: datetime
    status: str = "open"
    client_order_id: Optional[str] = None

    @property
    def locked_value(self) -> Decimal:
        return self.remaining_quantity * self.price


@dataclass
class Position:
    symbol: str
    quantity: Decimal
    entry_price: Decimal
    bot_id: str = DEFAULT_BOT_ID
    status: PositionStatus = PositionStatus.OPEN
    opened_at: datetime = field(default_factory=utcnow)
    closed_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    @property
    def entry_value(self) -> Decimal:
        return self.quantity * self.entry_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "quantity": str(self.quantity),
            "entry_price": str(self.entry_price),
            "bot_id": self.bot_id,
            "status": self.status.value,
            "opened_at": self.opened_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Position":
        return cls(
            id=d.get("id"),
            symbol=d["symbol"],
            quantity=Decimal(str(d["quantity"])),
            entry_price=Decimal(str(d["entry_price"])),
            bot_id=d.get("bot_id") or DEFAULT_BOT_ID,
            status=PositionStatus(d.get("status", "open")),
            opened_at=_parse_ts(d.get("opened_at")) or utcnow(),
            closed_at=_parse_ts(d.get("closed_at")),
        )


@dataclass
class Trade:
    symbol: str
    side: Side
    quantity: Decimal
    price: Decimal
    fee: Decimal = Decimal("0")
    exchange_order_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    @property
    def notional(self) -> Decimal:
        return self.price * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": str(self.quantity),
            "price": str(self.price),
            "fee": str(self.fee),
            "exchange_order_id": self.exchange_order_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Signal:
    symbol: str
    ema12: Decimal
    ema26: Decimal
    rsi: Decimal
    score: Decimal
    cadence: str
    generated_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class Metric:
    key: str
    value: Decimal
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class Alert:
    type: str
    severity: str
    title: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    sent: bool = False
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class TradeDecision:
    """One allocator output: buy or sell ``quantity`` of ``symbol``."""

    symbol: str
    side: Side
    quantity: Decimal
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": str(self.quantity),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TradeDecision":
        return cls(
            symbol=d["symbol"],
            side=Side(d["side"]),
            quantity=Decimal(str(d["quantity"])),
            reason=d.get("reason", ""),
        )


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts
