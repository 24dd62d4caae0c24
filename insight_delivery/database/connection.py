"""
SQLite database connection and schema management.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional


class Database:
    """SQLite database connection manager shared by the scheduler and workers."""

    def __init__(self, db_path: str):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory DB.
        """
        self.db_path = db_path
        self.lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        self._connect()

    def _connect(self) -> None:
        """Establish database connection."""
        if self.db_path != ":memory:":
            # Ensure parent directory exists
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

        # Worker threads share this connection; every statement goes through self.lock
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._connection.execute("PRAGMA foreign_keys = ON")

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the database connection."""
        if self._connection is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._connection

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Yield a cursor under the connection lock, committing on success."""
        with self.lock:
            cursor = self.connection.cursor()
            try:
                yield cursor
                self.connection.commit()
            except Exception:
                self.connection.rollback()
                raise
            finally:
                cursor.close()

    def initialize(self) -> None:
        """Create database schema if it doesn't exist."""
        with self.transaction() as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT,
                    phone TEXT,
                    push_token TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS tracked_products (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    product_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TIMESTAMP NOT NULL,
                    archived_at TIMESTAMP,
                    FOREIGN KEY (user_id) REFERENCES users(id),
                    UNIQUE (user_id, product_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS notification_preferences (
                    user_id INTEGER PRIMARY KEY,
                    channels TEXT NOT NULL,
                    delivery_time TEXT NOT NULL,
                    timezone TEXT NOT NULL,
                    frequency TEXT NOT NULL DEFAULT 'daily',
                    weekly_day INTEGER NOT NULL DEFAULT 0,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (user_id) REFERENCES users(id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS analysis_results (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    product_id TEXT NOT NULL,
                    payload_ref TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS delivery_jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tracked_product_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    due_date TEXT NOT NULL,
                    due_at TIMESTAMP NOT NULL,
                    payload_ref TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    claimed_by TEXT,
                    claimed_at TIMESTAMP,
                    delivered_at TIMESTAMP,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (tracked_product_id) REFERENCES tracked_products(id),
                    FOREIGN KEY (user_id) REFERENCES users(id),
                    UNIQUE (tracked_product_id, due_date)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS channel_attempts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id INTEGER NOT NULL,
                    channel TEXT NOT NULL,
                    attempt_number INTEGER NOT NULL,
                    attempted_at TIMESTAMP NOT NULL,
                    outcome TEXT NOT NULL,
                    latency_ms REAL NOT NULL,
                    error TEXT,
                    FOREIGN KEY (job_id) REFERENCES delivery_jobs(id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS scheduler_locks (
                    name TEXT PRIMARY KEY,
                    holder TEXT NOT NULL,
                    time_window TEXT NOT NULL,
                    expires_at TIMESTAMP NOT NULL
                )
            """)

            # Indexes for the scheduler and dispatcher queries
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_tracked_status
                ON tracked_products(status)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_analysis_product
                ON analysis_results(product_id, created_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_status_due
                ON delivery_jobs(status, due_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_attempts_job
                ON channel_attempts(job_id, channel)
            """)

    def close(self) -> None:
        """Close the database connection."""
        with self.lock:
            if self._connection:
                self._connection.close()
                self._connection = None
