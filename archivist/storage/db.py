from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

BASE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS backups (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    backup_type TEXT NOT NULL,
    destination_type TEXT NOT NULL
        CHECK (destination_type IN ('Local', 'NetworkShare', 'SSH')),
    destination_path TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    size_bytes INTEGER NOT NULL DEFAULT 0,
    compression_method TEXT,
    source_items TEXT NOT NULL DEFAULT '[]',
    success INTEGER NOT NULL DEFAULT 1 CHECK (success IN (0, 1))
);

CREATE INDEX IF NOT EXISTS idx_backups_type_timestamp
    ON backups (backup_type, timestamp);
"""

# Columns added after the base schema shipped. Applied in order, each one
# only when missing, so re-running against an up-to-date file is a no-op.
ADDITIVE_COLUMNS: list[tuple[str, str, str]] = [
    ("backups", "backup_strategy", "TEXT NOT NULL DEFAULT 'Full'"),
    ("backups", "parent_backup_id", "INTEGER"),
    ("backups", "duration_seconds", "REAL NOT NULL DEFAULT 0"),
    ("backups", "file_count", "INTEGER NOT NULL DEFAULT 0"),
]


def init_db(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with connection(db_path) as conn:
        conn.execute("PRAGMA journal_mode = WAL;")
        conn.executescript(BASE_SCHEMA_SQL)
        apply_migrations(conn)


def apply_migrations(conn: sqlite3.Connection) -> list[str]:
    added: list[str] = []
    for table, column, ddl in ADDITIVE_COLUMNS:
        if add_column_if_missing(conn, table=table, column=column, ddl=ddl):
            added.append(column)
    if added:
        logger.info("Catalog schema migrated, added columns: %s", ", ".join(added))
    return added


def add_column_if_missing(
    conn: sqlite3.Connection,
    *,
    table: str,
    column: str,
    ddl: str,
) -> bool:
    if column in table_columns(conn, table):
        return False
    try:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
    except sqlite3.OperationalError as error:
        # Another process may have added it between the check and the ALTER.
        if "duplicate column name" in str(error).lower():
            return False
        raise
    return True


def table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {str(row[1]) for row in rows}


@contextmanager
def connection(db_path: Path, *, timeout: float = 30.0) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(db_path, timeout=timeout)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
