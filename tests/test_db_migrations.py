import sqlite3
from pathlib import Path

from rotation.db_migrations import MIGRATIONS, applied_versions, apply_migrations, rollback_last, rollback_migration
from rotation.persistence_sqlite import SQLiteLedger


def _tables(conn):
    return {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}


def _indices(conn):
    return {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")}


def test_apply_migrations_idempotent(tmp_path: Path):
    ledger = SQLiteLedger(tmp_path / "migs.db")
    # the ledger applies everything on open
    assert apply_migrations(ledger.conn) == []
    assert applied_versions(ledger.conn) == sorted(MIGRATIONS)
    ledger.close()


def test_apply_all_creates_ledger_tables(tmp_path: Path):
    conn = sqlite3.connect(str(tmp_path / "chain.db"), timeout=30)
    applied = apply_migrations(conn)
    assert applied == [1, 2, 3]
    assert {"positions", "trades", "signals", "metrics", "alerts"} <= _tables(conn)
    assert "idx_positions_symbol_status" in _indices(conn)
    assert "idx_metrics_key" in _indices(conn)
    conn.close()


def test_apply_up_to_target(tmp_path: Path):
    conn = sqlite3.connect(str(tmp_path / "target.db"), timeout=30)
    assert apply_migrations(conn, target=1) == [1]
    assert "alerts" not in _tables(conn)
    assert apply_migrations(conn) == [2, 3]
    conn.close()


def test_rollback_indices_only(tmp_path: Path):
    conn = sqlite3.connect(str(tmp_path / "chain2.db"), timeout=30)
    apply_migrations(conn)
    rollback_migration(conn, 2)

    assert "positions" in _tables(conn)
    assert "idx_positions_symbol_status" not in _indices(conn)
    assert applied_versions(conn) == [1, 3]
    conn.close()


def test_rollback_last_walks_back_to_empty(tmp_path: Path):
    conn = sqlite3.connect(str(tmp_path / "chain3.db"), timeout=30)
    apply_migrations(conn)

    assert rollback_last(conn) == 3
    assert rollback_last(conn) == 2
    assert rollback_last(conn) == 1
    assert rollback_last(conn) is None
    assert "positions" not in _tables(conn)

    # and forward again
    assert apply_migrations(conn) == [1, 2, 3]
    conn.close()
