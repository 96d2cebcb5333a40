import subprocess
import sys
from pathlib import Path

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "migrate.py"


def run_cli(db_path, args, stdin=None):
    cmd = [sys.executable, str(SCRIPT), "--db", str(db_path)] + args
    res = subprocess.run(cmd, capture_output=True, text=True, input=stdin)
    return res.returncode, res.stdout, res.stderr


def test_cli_apply_and_list(tmp_path: Path):
    db = tmp_path / "cli.db"
    code, out, err = run_cli(db, ["apply"])
    assert code == 0
    assert "Applied migrations: [1, 2, 3]" in out

    code, out, err = run_cli(db, ["list"])
    assert code == 0
    assert "Available migrations:" in out
    assert "3: applied" in out


def test_cli_apply_dry_run(tmp_path: Path):
    db = tmp_path / "cli3.db"
    code, out, err = run_cli(db, ["apply", "--dry-run"])
    assert code == 0
    assert "Pending migrations: [1, 2, 3]" in out

    run_cli(db, ["apply"])
    code, out, err = run_cli(db, ["apply", "--dry-run"])
    assert code == 0
    assert "No pending migrations" in out


def test_cli_rollback_dry_run_keeps_migration(tmp_path: Path):
    db = tmp_path / "cli4.db"
    run_cli(db, ["apply"])
    code, out, err = run_cli(db, ["rollback", "--last", "--dry-run"])
    assert code == 0
    assert "Would rollback migration 3" in out

    code, out, err = run_cli(db, ["list"])
    assert "3: applied" in out


def test_cli_rollback_with_yes_flag(tmp_path: Path):
    db = tmp_path / "cli5.db"
    run_cli(db, ["apply"])
    code, out, err = run_cli(db, ["rollback", "--last", "--yes"])
    assert code == 0
    assert "Rolled back migration 3" in out
    assert "Are you sure" not in out


def test_cli_rollback_declined(tmp_path: Path):
    db = tmp_path / "cli6.db"
    run_cli(db, ["apply"])
    code, out, err = run_cli(db, ["rollback", "--version", "2"], stdin="no\n")
    assert code == 0
    assert "Aborted." in out

    code, out, err = run_cli(db, ["list"])
    assert "2: applied" in out
