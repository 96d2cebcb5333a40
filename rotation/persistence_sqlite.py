import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Iterator, List, Optional

from .db_migrations import apply_migrations
from .models import (
    Alert,
    Metric,
    Position,
    PositionStatus,
    Side,
    Signal,
    Trade,
    utcnow,
)


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _parse(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class _Database:
    """Shared sqlite3 connection guarded by a lock.

    Callers reach the store from worker threads (``asyncio.to_thread``), so
    every statement runs under the lock and every write inside
    ``BEGIN IMMEDIATE``.
    """

    def __init__(self, path: Path):
        self.path = path
        if str(path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.path), timeout=30, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.lock = threading.RLock()
        with self.lock:
            apply_migrations(self.conn)

    @contextmanager
    def write(self) -> Iterator[sqlite3.Cursor]:
        with self.lock:
            cur = self.conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    def query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self.lock:
            return self.conn.execute(sql, params).fetchall()


class PositionRepository:
    """Positions: find-open / find-open-by-symbol / update / close."""

    def __init__(self, db: _Database):
        self.db = db

    @staticmethod
    def _row(row) -> Position:
        return Position(
            id=row["id"],
            symbol=row["symbol"],
            quantity=Decimal(row["quantity"]),
            entry_price=Decimal(row["entry_price"]),
            status=PositionStatus(row["status"]),
            bot_id=row["bot_id"],
            opened_at=_parse(row["opened_at"]),
            closed_at=_parse(row["closed_at"]),
        )

    def create(self, position: Position) -> Position:
        with self.db.write() as cur:
            cur.execute(
                "INSERT INTO positions(symbol, quantity, entry_price, status, bot_id, opened_at, closed_at) VALUES(?, ?, ?, ?, ?, ?, ?)",
                (
                    position.symbol,
                    str(position.quantity),
                    str(position.entry_price),
                    position.status.value,
                    position.bot_id,
                    _ts(position.opened_at),
                    _ts(position.closed_at) if position.closed_at else None,
                ),
            )
            position.id = cur.lastrowid
        return position

    def get(self, position_id: int) -> Optional[Position]:
        rows = self.db.query("SELECT * FROM positions WHERE id = ?", (position_id,))
        return self._row(rows[0]) if rows else None

    def find_open(self, bot_id: Optional[str] = None) -> List[Position]:
        if bot_id is None:
            rows = self.db.query("SELECT * FROM positions WHERE status = 'open' ORDER BY id")
        else:
            rows = self.db.query("SELECT * FROM positions WHERE status = 'open' AND bot_id = ? ORDER BY id", (bot_id,))
        return [self._row(r) for r in rows]

    def find_open_by_symbol(self, symbol: str, bot_id: Optional[str] = None) -> List[Position]:
        sql = "SELECT * FROM positions WHERE status = 'open' AND symbol = ?"
        params: tuple = (symbol,)
        if bot_id is not None:
            sql += " AND bot_id = ?"
            params += (bot_id,)
        return [self._row(r) for r in self.db.query(sql + " ORDER BY id", params)]

    def find_by_symbol(self, symbol: str) -> List[Position]:
        rows = self.db.query("SELECT * FROM positions WHERE symbol = ? ORDER BY id", (symbol,))
        return [self._row(r) for r in rows]

    def update_quantity(self, position_id: int, quantity: Decimal) -> None:
        with self.db.write() as cur:
            cur.execute("UPDATE positions SET quantity = ? WHERE id = ?", (str(quantity), position_id))

    def close(self, position_id: int, closed_at: Optional[datetime] = None) -> None:
        with self.db.write() as cur:
            cur.execute(
                "UPDATE positions SET status = 'closed', closed_at = ? WHERE id = ? AND status = 'open'",
                (_ts(closed_at or utcnow()), position_id),
            )


class TradeRepository:
    def __init__(self, db: _Database):
        self.db = db

    @staticmethod
    def _row(row) -> Trade:
        return Trade(
            id=row["id"],
            symbol=row["symbol"],
            side=Side(row["side"]),
            quantity=Decimal(row["quantity"]),
            price=Decimal(row["price"]),
            fee=Decimal(row["fee"]),
            exchange_order_id=row["exchange_order_id"],
            created_at=_parse(row["created_at"]),
        )

    def create(self, trade: Trade) -> Trade:
        with self.db.write() as cur:
            cur.execute(
                "INSERT INTO trades(symbol, side, quantity, price, fee, exchange_order_id, created_at) VALUES(?, ?, ?, ?, ?, ?, ?)",
                (
                    trade.symbol,
                    trade.side.value,
                    str(trade.quantity),
                    str(trade.price),
                    str(trade.fee),
                    trade.exchange_order_id,
                    _ts(trade.created_at),
                ),
            )
            trade.id = cur.lastrowid
        return trade

    def find_all(self, limit: Optional[int] = None) -> List[Trade]:
        """All trades, oldest first (or the most recent ``limit``)."""
        if limit is None:
            rows = self.db.query("SELECT * FROM trades ORDER BY created_at, id")
        else:
            rows = self.db.query("SELECT * FROM (SELECT * FROM trades ORDER BY created_at DESC, id DESC LIMIT ?) ORDER BY created_at, id", (limit,))
        return [self._row(r) for r in rows]

    def find_by_symbol(self, symbol: str) -> List[Trade]:
        rows = self.db.query("SELECT * FROM trades WHERE symbol = ? ORDER BY created_at, id", (symbol,))
        return [self._row(r) for r in rows]

    def total_fees(self) -> Decimal:
        rows = self.db.query("SELECT fee FROM trades")
        return sum((Decimal(r["fee"]) for r in rows), Decimal("0"))


class SignalRepository:
    def __init__(self, db: _Database):
        self.db = db

    @staticmethod
    def _row(row) -> Signal:
        return Signal(
            id=row["id"],
            symbol=row["symbol"],
            ema12=Decimal(row["ema12"]),
            ema26=Decimal(row["ema26"]),
            rsi=Decimal(row["rsi"]),
            score=Decimal(row["score"]),
            cadence=row["cadence"],
            generated_at=_parse(row["generated_at"]),
        )

    def create(self, signal: Signal) -> Signal:
        with self.db.write() as cur:
            cur.execute(
                "INSERT INTO signals(symbol, ema12, ema26, rsi, score, cadence, generated_at) VALUES(?, ?, ?, ?, ?, ?, ?)",
                (
                    signal.symbol,
                    str(signal.ema12),
                    str(signal.ema26),
                    str(signal.rsi),
                    str(signal.score),
                    signal.cadence,
                    _ts(signal.generated_at),
                ),
            )
            signal.id = cur.lastrowid
        return signal

    def find_latest_by_symbol(self, symbol: str) -> Optional[Signal]:
        rows = self.db.query("SELECT * FROM signals WHERE symbol = ? ORDER BY generated_at DESC, id DESC LIMIT 1", (symbol,))
        return self._row(rows[0]) if rows else None

    def find_latest(self, limit: int = 50) -> List[Signal]:
        rows = self.db.query("SELECT * FROM signals ORDER BY generated_at DESC, id DESC LIMIT ?", (limit,))
        return [self._row(r) for r in rows]


class MetricRepository:
    def __init__(self, db: _Database):
        self.db = db

    @staticmethod
    def _row(row) -> Metric:
        return Metric(id=row["id"], key=row["key"], value=Decimal(row["value"]), created_at=_parse(row["created_at"]))

    def create(self, key: str, value: Decimal, created_at: Optional[datetime] = None) -> Metric:
        metric = Metric(key=key, value=value, created_at=created_at or utcnow())
        with self.db.write() as cur:
            cur.execute(
                "INSERT INTO metrics(key, value, created_at) VALUES(?, ?, ?)",
                (key, str(value), _ts(metric.created_at)),
            )
            metric.id = cur.lastrowid
        return metric

    def find_latest(self, key: str) -> Optional[Metric]:
        rows = self.db.query("SELECT * FROM metrics WHERE key = ? ORDER BY created_at DESC, id DESC LIMIT 1", (key,))
        return self._row(rows[0]) if rows else None

    def find_history(self, key: str, start: Optional[datetime] = None, end: Optional[datetime] = None, limit: Optional[int] = None) -> List[Metric]:
        """Rows for ``key`` in the optional [start, end] range, newest first."""
        sql = "SELECT * FROM metrics WHERE key = ?"
        params: tuple = (key,)
        if start is not None:
            sql += " AND created_at >= ?"
            params += (_ts(start),)
        if end is not None:
            sql += " AND created_at <= ?"
            params += (_ts(end),)
        sql += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params += (limit,)
        return [self._row(r) for r in self.db.query(sql, params)]


class AlertRepository:
    def __init__(self, db: _Database):
        self.db = db

    @staticmethod
    def _row(row) -> Alert:
        return Alert(
            id=row["id"],
            type=row["type"],
            severity=row["severity"],
            title=row["title"],
            message=row["message"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            sent=bool(row["sent"]),
            created_at=_parse(row["created_at"]),
        )

    def create(self, alert: Alert) -> Alert:
        with self.db.write() as cur:
            cur.execute(
                "INSERT INTO alerts(type, severity, title, message, metadata, sent, created_at) VALUES(?, ?, ?, ?, ?, ?, ?)",
                (
                    alert.type,
                    alert.severity,
                    alert.title,
                    alert.message,
                    json.dumps(alert.metadata, default=str),
                    int(alert.sent),
                    _ts(alert.created_at),
                ),
            )
            alert.id = cur.lastrowid
        return alert

    def find_recent(self, limit: int = 50) -> List[Alert]:
        rows = self.db.query("SELECT * FROM alerts ORDER BY created_at DESC, id DESC LIMIT ?", (limit,))
        return [self._row(r) for r in rows]

    def find_by_type(self, alert_type: str, limit: int = 50) -> List[Alert]:
        rows = self.db.query("SELECT * FROM alerts WHERE type = ? ORDER BY created_at DESC, id DESC LIMIT ?", (alert_type, limit))
        return [self._row(r) for r in rows]


class SQLiteLedger:
    """SQLite-backed ledger store with one repository per entity.

    Usage:
        ledger = SQLiteLedger(Path("rotation.db"))
        ledger.positions.find_open(bot_id="slow-joe")
        ledger.metrics.create("NAV", Decimal("1000"))
    """

    def __init__(self, path: Path):
        self.db = _Database(Path(path))
        self.positions = PositionRepository(self.db)
        self.trades = TradeRepository(self.db)
        self.signals = SignalRepository(self.db)
        self.metrics = MetricRepository(self.db)
        self.alerts = AlertRepository(self.db)

    @property
    def conn(self) -> sqlite3.Connection:
        return self.db.conn

    def close(self) -> None:
        with self.db.lock:
            self.db.conn.close()
