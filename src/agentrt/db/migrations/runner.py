"""Simple SQL migration runner."""

import sqlite3
from pathlib import Path

from agentrt.db.connection import get_conn

MIGRATIONS_DIR = Path(__file__).resolve().parent


def apply_migrations(conn: sqlite3.Connection) -> list[str]:
    """Apply pending `*.sql` files in name order; returns the names applied."""
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations("
        "name TEXT PRIMARY KEY, "
        "applied_at TEXT NOT NULL)"
    )
    applied = {row[0] for row in conn.execute("SELECT name FROM schema_migrations").fetchall()}
    ran: list[str] = []
    for file in sorted(MIGRATIONS_DIR.glob("*.sql")):
        if file.name in applied:
            continue
        conn.executescript(file.read_text())
        conn.execute(
            "INSERT INTO schema_migrations(name, applied_at) VALUES(?, datetime('now'))",
            (file.name,),
        )
        ran.append(file.name)
    return ran


def run_migrations(path: str | None = None) -> list[str]:
    with get_conn(path) as conn:
        return apply_migrations(conn)


if __name__ == "__main__":
    run_migrations()
