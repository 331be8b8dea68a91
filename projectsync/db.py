from __future__ import annotations

import sqlite3
from pathlib import Path

from .config import DEFAULT_STORE_PATH

DEFAULT_DB_PATH = DEFAULT_STORE_PATH
MEMORY_PATH = ":memory:"


def connect(db_path: Path | str) -> sqlite3.Connection:
    if str(db_path) == MEMORY_PATH:
        conn = sqlite3.connect(MEMORY_PATH)
        conn.row_factory = sqlite3.Row
        return conn
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS kv (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
    )
    conn.commit()
