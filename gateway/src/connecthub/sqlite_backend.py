from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

SCHEMA_VERSION = 1


class SQLiteBackend:
    """Owns a shared SQLite connection and applies chat store migrations."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        # Identity columns carry no declared type so integer and text
        # identities are stored and compared as given.
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sender_id NOT NULL,
                receiver_id NOT NULL,
                text TEXT,
                file_url TEXT,
                file_type TEXT,
                file_name TEXT,
                created_at_ms INTEGER NOT NULL,
                CHECK (text IS NOT NULL OR file_url IS NOT NULL)
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS messages_pair ON messages (sender_id, receiver_id, id)"
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS calls (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                caller_id NOT NULL,
                receiver_id NOT NULL,
                call_kind TEXT NOT NULL CHECK (call_kind IN ('audio', 'video')),
                status TEXT NOT NULL CHECK (status IN ('missed', 'rejected', 'completed')),
                duration_s INTEGER,
                started_at_ms INTEGER,
                ended_at_ms INTEGER,
                created_at_ms INTEGER NOT NULL
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS calls_caller ON calls (caller_id, id)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS calls_receiver ON calls (receiver_id, id)")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS blocked_users (
                blocker_id NOT NULL,
                blocked_id NOT NULL,
                PRIMARY KEY (blocker_id, blocked_id)
            )
            """
        )
