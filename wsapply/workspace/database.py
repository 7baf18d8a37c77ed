"""SQLite-backed MigrationRunner.

Applied migrations are tracked in a marker table inside the same database,
so a whole-database snapshot also captures which migrations were applied.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

MARKER_TABLE = "_wsapply_migrations"


class SQLiteMigrationRunner:
    """Runs migrations against a SQLite database file (or ``:memory:``)."""

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        self._conn = sqlite3.connect(self.path, isolation_level=None)
        self._ensure_marker_table()

    def __enter__(self) -> "SQLiteMigrationRunner":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # MigrationRunner
    # ------------------------------------------------------------------

    def execute(self, sql: str) -> None:
        logger.debug("Executing SQL on %s: %s", self.path, sql.strip()[:200])
        self._conn.executescript(sql)

    def mark_applied(self, migration_id: str) -> None:
        self._conn.execute(
            f"INSERT OR REPLACE INTO {MARKER_TABLE} (id, applied_at) VALUES (?, ?)",
            (migration_id, datetime.now(timezone.utc).isoformat()),
        )

    def is_applied(self, migration_id: str) -> bool:
        row = self._conn.execute(
            f"SELECT 1 FROM {MARKER_TABLE} WHERE id = ?", (migration_id,)
        ).fetchone()
        return row is not None

    def applied_ids(self) -> list[str]:
        rows = self._conn.execute(f"SELECT id FROM {MARKER_TABLE} ORDER BY applied_at, id").fetchall()
        return [r[0] for r in rows]

    def snapshot_database(self) -> bytes:
        return bytes(self._conn.serialize())

    def restore_database(self, blob: bytes) -> None:
        source = sqlite3.connect(":memory:")
        try:
            source.deserialize(blob)
            source.backup(self._conn)
        finally:
            source.close()
        logger.info("Restored database %s from snapshot (%d bytes)", self.path, len(blob))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ensure_marker_table(self) -> None:
        self._conn.execute(
            f"CREATE TABLE IF NOT EXISTS {MARKER_TABLE} ("
            "id TEXT PRIMARY KEY, applied_at TEXT NOT NULL)"
        )
