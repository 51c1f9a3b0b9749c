from __future__ import annotations

import asyncio
import sqlite3
from typing import Any, Callable, List, TypeVar

from .errors import PersistenceError
from .models import CallRecord, FileReference, Identity, Message, _now_ms
from .sqlite_backend import SQLiteBackend
from .store import ChatStore

T = TypeVar("T")

_MESSAGE_COLUMNS = "id, sender_id, receiver_id, text, file_url, file_type, file_name, created_at_ms"
_CALL_COLUMNS = (
    "id, caller_id, receiver_id, call_kind, status, duration_s, started_at_ms, ended_at_ms, created_at_ms"
)


def _message_from_row(row: sqlite3.Row) -> Message:
    file = None
    if row["file_url"] is not None:
        file = FileReference(url=row["file_url"], mime_type=row["file_type"], name=row["file_name"])
    return Message(
        id=row["id"],
        sender_id=row["sender_id"],
        receiver_id=row["receiver_id"],
        text=row["text"],
        file=file,
        created_at_ms=row["created_at_ms"],
    )


def _call_from_row(row: sqlite3.Row) -> CallRecord:
    return CallRecord(
        id=row["id"],
        caller_id=row["caller_id"],
        receiver_id=row["receiver_id"],
        call_kind=row["call_kind"],
        status=row["status"],
        duration_s=row["duration_s"],
        started_at_ms=row["started_at_ms"],
        ended_at_ms=row["ended_at_ms"],
        created_at_ms=row["created_at_ms"],
    )


class SQLiteChatStore(ChatStore):
    """Durable chat store backed by SQLite.

    Each operation runs in a worker thread under the backend lock, so callers
    on the event loop suspend while the statement executes.
    """

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    async def _run(self, func: Callable[[sqlite3.Connection], T]) -> T:
        return await asyncio.to_thread(self._locked, func)

    def _locked(self, func: Callable[[sqlite3.Connection], T]) -> T:
        with self._backend.lock:
            conn = self._backend.connection
            try:
                return func(conn)
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.rollback()
                raise PersistenceError(str(exc)) from exc

    async def insert_message(
        self,
        sender_id: Identity,
        receiver_id: Identity,
        text: str | None,
        file: FileReference | None,
    ) -> Message:
        created_at_ms = _now_ms()
        params: tuple[Any, ...] = (
            sender_id,
            receiver_id,
            text,
            file.url if file else None,
            file.mime_type if file else None,
            file.name if file else None,
            created_at_ms,
        )

        def insert(conn: sqlite3.Connection) -> Message:
            cursor = conn.execute(
                """
                INSERT INTO messages (sender_id, receiver_id, text, file_url, file_type, file_name, created_at_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                params,
            )
            return Message(
                id=int(cursor.lastrowid),
                sender_id=sender_id,
                receiver_id=receiver_id,
                text=text,
                file=file,
                created_at_ms=created_at_ms,
            )

        return await self._run(insert)

    async def insert_call_record(
        self,
        caller_id: Identity,
        receiver_id: Identity,
        call_kind: str,
        status: str,
        *,
        duration_s: int | None = None,
        started_at_ms: int | None = None,
        ended_at_ms: int | None = None,
    ) -> CallRecord:
        created_at_ms = _now_ms()

        def insert(conn: sqlite3.Connection) -> CallRecord:
            cursor = conn.execute(
                """
                INSERT INTO calls (
                    caller_id, receiver_id, call_kind, status, duration_s, started_at_ms, ended_at_ms, created_at_ms
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (caller_id, receiver_id, call_kind, status, duration_s, started_at_ms, ended_at_ms, created_at_ms),
            )
            return CallRecord(
                id=int(cursor.lastrowid),
                caller_id=caller_id,
                receiver_id=receiver_id,
                call_kind=call_kind,
                status=status,
                duration_s=duration_s,
                started_at_ms=started_at_ms,
                ended_at_ms=ended_at_ms,
                created_at_ms=created_at_ms,
            )

        return await self._run(insert)

    async def is_blocked(self, a: Identity, b: Identity) -> bool:
        def query(conn: sqlite3.Connection) -> bool:
            row = conn.execute(
                """
                SELECT 1 FROM blocked_users
                WHERE (blocker_id=? AND blocked_id=?) OR (blocker_id=? AND blocked_id=?)
                LIMIT 1
                """,
                (a, b, b, a),
            ).fetchone()
            return row is not None

        return await self._run(query)

    async def add_block(self, blocker_id: Identity, blocked_id: Identity) -> None:
        def insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT OR IGNORE INTO blocked_users (blocker_id, blocked_id) VALUES (?, ?)",
                (blocker_id, blocked_id),
            )

        await self._run(insert)

    async def list_messages(self, a: Identity, b: Identity, limit: int = 200) -> List[Message]:
        if limit <= 0:
            return []

        def query(conn: sqlite3.Connection) -> List[Message]:
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE (sender_id=? AND receiver_id=?) OR (sender_id=? AND receiver_id=?)
                ORDER BY id DESC
                LIMIT ?
                """,
                (a, b, b, a, limit),
            ).fetchall()
            return [_message_from_row(row) for row in reversed(rows)]

        return await self._run(query)

    async def list_calls(self, identity: Identity, limit: int = 50) -> List[CallRecord]:
        if limit <= 0:
            return []

        def query(conn: sqlite3.Connection) -> List[CallRecord]:
            rows = conn.execute(
                f"""
                SELECT {_CALL_COLUMNS} FROM calls
                WHERE caller_id=? OR receiver_id=?
                ORDER BY id DESC
                LIMIT ?
                """,
                (identity, identity, limit),
            ).fetchall()
            return [_call_from_row(row) for row in rows]

        return await self._run(query)

    def close(self) -> None:
        self._backend.close()
