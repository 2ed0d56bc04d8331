from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from typing import Any

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS sync_runs (
  id TEXT PRIMARY KEY,
  status TEXT NOT NULL,
  triggered_by TEXT NOT NULL DEFAULT 'manual',
  pages_listed INTEGER DEFAULT 0,
  items_processed INTEGER DEFAULT 0,
  items_skipped INTEGER DEFAULT 0,
  started_at TEXT DEFAULT (datetime('now')),
  finished_at TEXT,
  error TEXT
);

CREATE TABLE IF NOT EXISTS sync_failures (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  page_id TEXT NOT NULL UNIQUE,
  run_id TEXT,
  title TEXT,
  error_type TEXT NOT NULL,
  error_message TEXT,
  retry_count INTEGER DEFAULT 0,
  first_attempt TEXT DEFAULT (datetime('now')),
  last_attempt TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_sync_runs_started_at ON sync_runs(started_at);
"""


@dataclass
class DB:
    conn: sqlite3.Connection

    def init(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    def save_sync_failure(
        self,
        *,
        page_id: str,
        error_type: str,
        error_message: str | None = None,
        title: str | None = None,
        run_id: str | None = None,
    ) -> None:
        """Record (or bump) the latest failure for a page."""
        self.conn.execute(
            """INSERT INTO sync_failures
               (page_id, run_id, title, error_type, error_message)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(page_id) DO UPDATE SET
                 run_id = excluded.run_id,
                 title = COALESCE(excluded.title, title),
                 error_type = excluded.error_type,
                 error_message = excluded.error_message,
                 retry_count = retry_count + 1,
                 last_attempt = datetime('now')""",
            (page_id, run_id, title, error_type, error_message),
        )
        self.conn.commit()

    def clear_sync_failure(self, page_id: str) -> None:
        """Forget a page's failure once it has been published."""
        self.conn.execute("DELETE FROM sync_failures WHERE page_id = ?", (page_id,))
        self.conn.commit()

    def get_sync_failures(self, error_type: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        query = """
            SELECT page_id, run_id, title, error_type, error_message,
                   retry_count, first_attempt, last_attempt
            FROM sync_failures
        """
        params: list[Any] = []
        if error_type:
            query += " WHERE error_type = ?"
            params.append(error_type)
        query += " ORDER BY last_attempt DESC, id DESC LIMIT ?"
        params.append(limit)
        cur = self.conn.execute(query, params)
        return [dict(row) for row in cur.fetchall()]

    def get_failure_summary(self) -> dict[str, int]:
        cur = self.conn.execute(
            "SELECT error_type, COUNT(*) FROM sync_failures GROUP BY error_type"
        )
        return {row[0]: row[1] for row in cur.fetchall()}


def connect(db_path: str) -> DB:
    """Open (creating if needed) the SQLite database and apply the schema."""
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    db = DB(conn=conn)
    db.init()
    return db
