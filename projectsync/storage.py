from __future__ import annotations

import datetime as dt
import re
from pathlib import Path

from . import db


class KeyValueStore:
    """Durable string key/value storage shared by every tab of one origin.

    Backed by a single SQLite table so separate processes pointing at the same
    file observe each other's writes on their next read.
    """

    def __init__(self, db_path: Path | str = db.DEFAULT_DB_PATH):
        self.db_path = db_path
        self.conn = db.connect(db_path)
        db.initialize_schema(self.conn)

    def close(self) -> None:
        self.conn.close()

    def has(self, key: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM kv WHERE key = ?", (key,)).fetchone()
        return row is not None

    def fetch(self, key: str) -> str | None:
        row = self.conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def set(self, key: str, value: str) -> str:
        now = dt.datetime.now(dt.UTC).isoformat()
        self.conn.execute(
            """
            INSERT INTO kv(key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, now),
        )
        self.conn.commit()
        return value

    def remove(self, key: str) -> None:
        self.conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        self.conn.commit()

    def keys(self, pattern: str | re.Pattern[str]) -> list[str]:
        """Return keys matching ``pattern``.

        When the pattern has a capture group, the first group is returned
        instead of the full key, so ``project-(.*)`` yields bare uids.
        """

        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        matched: list[str] = []
        for row in self.conn.execute("SELECT key FROM kv ORDER BY key").fetchall():
            key = str(row["key"])
            match = regex.search(key)
            if match is None:
                continue
            matched.append(match.group(1) if regex.groups else key)
        return matched
