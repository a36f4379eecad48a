from __future__ import annotations

import sys
from pathlib import Path

if __package__ is None:  # Allow running as a script.
    sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from chartbase.db.connection import get_connection

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def _ensure_migrations_table(conn) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TIMESTAMPTZ DEFAULT NOW()
            )
            """
        )
    conn.commit()


def _applied_migrations(conn) -> set[str]:
    with conn.cursor() as cur:
        cur.execute("SELECT version FROM schema_migrations")
        return {row[0] for row in cur.fetchall()}


def _apply_migration(conn, version: str, sql: str) -> None:
    with conn.cursor() as cur:
        cur.execute(sql)
        cur.execute(
            "INSERT INTO schema_migrations (version) VALUES (%s)",
            (version,),
        )
    conn.commit()


def apply_migrations(conn, migrations_dir: Path = MIGRATIONS_DIR) -> list[str]:
    """Apply pending migrations in file-name order; returns the versions applied."""
    _ensure_migrations_table(conn)
    applied = _applied_migrations(conn)

    newly_applied = []
    for migration in sorted(migrations_dir.glob("*.sql")):
        version = migration.name
        if version in applied:
            continue
        print(f"Applying {version}...")
        _apply_migration(conn, version, migration.read_text(encoding="utf-8"))
        newly_applied.append(version)
    return newly_applied


def main() -> int:
    if not any(MIGRATIONS_DIR.glob("*.sql")):
        print("No migration files found.", file=sys.stderr)
        return 1

    with get_connection() as conn:
        apply_migrations(conn)

    print("Migrations complete.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
