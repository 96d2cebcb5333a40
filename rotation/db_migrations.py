from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional


def _migration_1(conn):
    """Ledger tables: positions, trades, signals, metrics."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS positions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            symbol TEXT NOT NULL,
            quantity TEXT NOT NULL,
            entry_price TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'open',
            bot_id TEXT NOT NULL,
            opened_at TEXT NOT NULL,
            closed_at TEXT
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS trades (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            symbol TEXT NOT NULL,
            side TEXT NOT NULL,
            quantity TEXT NOT NULL,
            price TEXT NOT NULL,
            fee TEXT NOT NULL DEFAULT '0',
            exchange_order_id TEXT,
            created_at TEXT NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS signals (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            symbol TEXT NOT NULL,
            ema12 TEXT NOT NULL,
            ema26 TEXT NOT NULL,
            rsi TEXT NOT NULL,
            score TEXT NOT NULL,
            cadence TEXT NOT NULL,
            generated_at TEXT NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS metrics (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            key TEXT NOT NULL,
            value TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )


def _migration_1_down(conn):
    cur = conn.cursor()
    cur.execute("DROP TABLE IF EXISTS metrics")
    cur.execute("DROP TABLE IF EXISTS signals")
    cur.execute("DROP TABLE IF EXISTS trades")
    cur.execute("DROP TABLE IF EXISTS positions")


def _migration_2(conn):
    """Add indices for the query shapes used by the allocator and reconciler."""
    cur = conn.cursor()
    cur.execute("CREATE INDEX IF NOT EXISTS idx_positions_symbol_status ON positions(symbol, status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_positions_bot_status ON positions(bot_id, status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_trades_symbol ON trades(symbol, created_at)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_signals_symbol ON signals(symbol, generated_at)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_metrics_key ON metrics(key, created_at)")


def _migration_2_down(conn):
    cur = conn.cursor()
    cur.execute("DROP INDEX IF EXISTS idx_positions_symbol_status")
    cur.execute("DROP INDEX IF EXISTS idx_positions_bot_status")
    cur.execute("DROP INDEX IF EXISTS idx_trades_symbol")
    cur.execute("DROP INDEX IF EXISTS idx_signals_symbol")
    cur.execute("DROP INDEX IF EXISTS idx_metrics_key")


def _migration_3(conn):
    """Alert history."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS alerts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            type TEXT NOT NULL,
            severity TEXT NOT NULL,
            title TEXT NOT NULL,
            message TEXT NOT NULL,
            metadata TEXT,
            sent INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_alerts_type ON alerts(type, created_at)")


def _migration_3_down(conn):
    cur = conn.cursor()
    cur.execute("DROP INDEX IF EXISTS idx_alerts_type")
    cur.execute("DROP TABLE IF EXISTS alerts")


MIGRATIONS: Dict[int, Callable] = {
    1: _migration_1,
    2: _migration_2,
    3: _migration_3,
}

MIGRATION_DOWNS: Dict[int, Callable] = {
    1: _migration_1_down,
    2: _migration_2_down,
    3: _migration_3_down,
}


def _ensure_table(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()


def applied_versions(conn) -> List[int]:
    _ensure_table(conn)
    cur = conn.execute("SELECT version FROM schema_migrations ORDER BY version")
    return [row[0] for row in cur.fetchall()]


def apply_migrations(conn, target: Optional[int] = None) -> List[int]:
    """Apply pending migrations (up to ``target`` if given) to the given sqlite3 connection.

    Returns the list of applied migration versions.
    """
    applied = set(applied_versions(conn))
    to_apply = sorted(v for v in MIGRATIONS if v not in applied and (target is None or v <= target))
    applied_now = []
    cur = conn.cursor()
    for v in to_apply:
        try:
            conn.execute("BEGIN IMMEDIATE")
            MIGRATIONS[v](conn)
            cur.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES(?, ?)",
                (v, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()
            applied_now.append(v)
        except Exception:
            conn.rollback()
            raise
    return applied_now


def rollback_migration(conn, version: int) -> None:
    """Rollback a specific migration version if a down migration is registered."""
    if version not in MIGRATION_DOWNS:
        raise RuntimeError(f"No down migration registered for version {version}")

    try:
        conn.execute("BEGIN IMMEDIATE")
        MIGRATION_DOWNS[version](conn)
        conn.execute("DELETE FROM schema_migrations WHERE version = ?", (version,))
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def rollback_last(conn) -> Optional[int]:
    """Rollback the latest applied migration; returns the rolled-back version or None."""
    versions = applied_versions(conn)
    if not versions:
        return None
    v = versions[-1]
    rollback_migration(conn, v)
    return v
