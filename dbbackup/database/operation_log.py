"""Operation log for backup, restore and retention runs, stored in SQLite.

This is an audit trail of what happened. It is never used to decide which
snapshots exist; the backup directory is the only source of truth for that.
"""

import sqlite3
import threading
import logging
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

OPERATIONS = ("backup", "restore", "retention", "configure")


class OperationLog:
    """Thread-safe SQLite log of backup subsystem operations."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        if not hasattr(self._local, "connection") or self._local.connection is None:
            self._local.connection = sqlite3.connect(
                str(self.db_path), timeout=10
            )
            self._local.connection.row_factory = sqlite3.Row
            self._local.connection.execute("PRAGMA journal_mode=WAL")
            self._local.connection.execute("PRAGMA synchronous=NORMAL")
        return self._local.connection

    def _init_db(self):
        conn = self._get_connection()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS operations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                operation TEXT NOT NULL,
                trigger TEXT NOT NULL,
                success INTEGER NOT NULL,
                filename TEXT,
                size_bytes INTEGER,
                deleted_count INTEGER,
                duration_ms INTEGER,
                error TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_operations_timestamp
                ON operations(timestamp);
            CREATE INDEX IF NOT EXISTS idx_operations_operation
                ON operations(operation);
        """)
        conn.commit()
        logger.info("Operation log initialized at %s", self.db_path)

    def record(
        self,
        operation: str,
        success: bool,
        trigger: str = "manual",
        filename: str = None,
        size_bytes: int = None,
        deleted_count: int = None,
        duration_ms: int = None,
        error: str = None,
    ) -> int:
        """Insert an operation record. Returns the row ID."""
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown operation: {operation}")
        timestamp = datetime.now(timezone.utc).isoformat()
        conn = self._get_connection()
        cursor = conn.execute(
            """
            INSERT INTO operations (
                timestamp, operation, trigger, success, filename,
                size_bytes, deleted_count, duration_ms, error
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                timestamp,
                operation,
                trigger,
                int(success),
                filename,
                size_bytes,
                deleted_count,
                duration_ms,
                error,
            ),
        )
        conn.commit()
        logger.debug(
            "Logged %s operation (success=%s, file=%s)", operation, success, filename
        )
        return cursor.lastrowid

    def get_operations(
        self,
        operation: str = None,
        since: str = None,
        limit: int = 100,
    ) -> list[dict]:
        """Query operations, newest first, with optional filters."""
        conn = self._get_connection()
        query = "SELECT * FROM operations WHERE 1=1"
        params = []

        if operation:
            query += " AND operation = ?"
            params.append(operation)
        if since:
            query += " AND timestamp >= ?"
            params.append(since)

        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        rows = conn.execute(query, params).fetchall()
        result = []
        for row in rows:
            entry = dict(row)
            entry["success"] = bool(entry["success"])
            result.append(entry)
        return result

    def last_operation(self, operation: str, success: bool | None = None) -> dict | None:
        conn = self._get_connection()
        query = "SELECT * FROM operations WHERE operation = ?"
        params: list = [operation]
        if success is not None:
            query += " AND success = ?"
            params.append(int(success))
        query += " ORDER BY id DESC LIMIT 1"
        row = conn.execute(query, params).fetchone()
        if row is None:
            return None
        entry = dict(row)
        entry["success"] = bool(entry["success"])
        return entry

    def close(self):
        if hasattr(self._local, "connection") and self._local.connection:
            self._local.connection.close()
            self._local.connection = None
