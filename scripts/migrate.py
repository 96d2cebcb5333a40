#!/usr/bin/env python
"""Migration CLI: list, apply, rollback migrations for the ledger database.

Usage (examples):

python scripts/migrate.py --db rotation.db list
python scripts/migrate.py --db rotation.db apply
python scripts/migrate.py --db rotation.db apply --target 2
python scripts/migrate.py --db rotation.db rollback --version 3
python scripts/migrate.py --db rotation.db rollback --last --yes
"""
import argparse
import sqlite3
import sys
from pathlib import Path

# Ensure project root is on sys.path so `rotation` package is importable when running as a script.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from rotation.db_migrations import MIGRATIONS, applied_versions, apply_migrations, rollback_last, rollback_migration


def list_migrations(conn):
    applied_versions(conn)
    cur = conn.execute("SELECT version, applied_at FROM schema_migrations ORDER BY version")
    applied = {row[0]: row[1] for row in cur.fetchall()}
    print("Available migrations:")
    for v in sorted(MIGRATIONS.keys()):
        status = "applied" if v in applied else "pending"
        doc = (MIGRATIONS[v].__doc__ or "").strip()
        print(f"  {v}: {status} (applied_at={applied.get(v, '-')}) {doc}")


def _confirm(prompt: str) -> bool:
    try:
        return input(prompt).strip().lower() == "yes"
    except (EOFError, BrokenPipeError):
        # Non-interactive or piped stdin; auto-confirm
        return True


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", required=True, help="Path to sqlite DB file")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("list")
    apply_p = sub.add_parser("apply")
    apply_p.add_argument("--target", type=int, help="Apply migrations up to this version only")
    apply_p.add_argument("--dry-run", action="store_true", help="Show pending migrations without applying them")

    rb = sub.add_parser("rollback")
    rb.add_argument("--version", type=int, help="Rollback a specific migration version")
    rb.add_argument("--last", action="store_true", help="Rollback the last applied migration")
    rb.add_argument("--dry-run", action="store_true", help="Show which migration would be rolled back without performing it")
    rb.add_argument("--yes", action="store_true", help="Do not prompt for confirmation when rolling back")

    args = parser.parse_args()
    db = Path(args.db)
    db.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db), timeout=30)
    try:
        if args.cmd == "list":
            list_migrations(conn)
        elif args.cmd == "apply":
            if args.dry_run:
                done = set(applied_versions(conn))
                pending = sorted(v for v in MIGRATIONS if v not in done and (args.target is None or v <= args.target))
                if pending:
                    print("Pending migrations:", pending)
                else:
                    print("No pending migrations; database up-to-date.")
                return
            applied = apply_migrations(conn, target=args.target)
            if applied:
                print("Applied migrations:", applied)
            else:
                print("No migrations applied; database up-to-date.")
        elif args.cmd == "rollback" and (args.version or args.last):
            versions = applied_versions(conn)
            version = args.version or (versions[-1] if versions else None)
            if version is None:
                print("No applied migrations to rollback")
                return
            if args.dry_run:
                print(f"Would rollback migration {version} (dry-run)")
                return
            if not args.yes and not _confirm(
                f"Are you sure you want to rollback migration {version}? This may DROP data. Type 'yes' to continue: "
            ):
                print("Aborted.")
                return
            if args.version:
                rollback_migration(conn, version)
            else:
                rollback_last(conn)
            print(f"Rolled back migration {version}")
        else:
            parser.print_help()
    finally:
        conn.close()


if __name__ == "__main__":
    main()
