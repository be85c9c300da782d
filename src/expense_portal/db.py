from __future__ import annotations

import sqlite3
from pathlib import Path

from expense_portal.repositories import EntityStore

DEFAULT_MIGRATION = Path(__file__).resolve().parents[2] / "migrations" / "sqlite" / "001_entity_store.sql"


def connect_sqlite(path: str | Path = ":memory:", check_same_thread: bool = True) -> sqlite3.Connection:
    conn = sqlite3.connect(path, check_same_thread=check_same_thread)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def apply_sqlite_migration(conn: sqlite3.Connection, migration_path: str | Path = DEFAULT_MIGRATION) -> None:
    sql = Path(migration_path).read_text(encoding="utf-8")
    conn.executescript(sql)


def open_store(
    path: str | Path = ":memory:",
    migration_path: str | Path = DEFAULT_MIGRATION,
    check_same_thread: bool = True,
) -> EntityStore:
    conn = connect_sqlite(path, check_same_thread=check_same_thread)
    apply_sqlite_migration(conn, migration_path)
    return EntityStore(conn)
