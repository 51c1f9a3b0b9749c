from __future__ import annotations

from typing import List, Set, Tuple

from .models import CallRecord, FileReference, Identity, Message, _now_ms


class ChatStore:
    """Durable storage consumed by the relay and the call broker.

    Implementations raise ``PersistenceError`` when a write or read fails.
    """

    async def insert_message(
        self,
        sender_id: Identity,
        receiver_id: Identity,
        text: str | None,
        file: FileReference | None,
    ) -> Message:
        raise NotImplementedError

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
        raise NotImplementedError

    async def is_blocked(self, a: Identity, b: Identity) -> bool:
        raise NotImplementedError

    async def add_block(self, blocker_id: Identity, blocked_id: Identity) -> None:
        raise NotImplementedError

    async def list_messages(self, a: Identity, b: Identity, limit: int = 200) -> List[Message]:
        raise NotImplementedError

    async def list_calls(self, identity: Identity, limit: int = 50) -> List[CallRecord]:
        raise NotImplementedError

    def close(self) -> None:
        pass


class InMemoryChatStore(ChatStore):
    def __init__(self) -> None:
        self._messages: List[Message] = []
        self._calls: List[CallRecord] = []
        self._blocks: Set[Tuple[Identity, Identity]] = set()

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def calls(self) -> List[CallRecord]:
        return list(self._calls)

    async def insert_message(
        self,
        sender_id: Identity,
        receiver_id: Identity,
        text: str | None,
        file: FileReference | None,
    ) -> Message:
        message = Message(
            id=len(self._messages) + 1,
            sender_id=sender_id,
            receiver_id=receiver_id,
            text=text,
            file=file,
            created_at_ms=_now_ms(),
        )
        self._messages.append(message)
        return message

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
        record = CallRecord(
            id=len(self._calls) + 1,
            caller_id=caller_id,
            receiver_id=receiver_id,
            call_kind=call_kind,
            status=status,
            duration_s=duration_s,
            started_at_ms=started_at_ms,
            ended_at_ms=ended_at_ms,
            created_at_ms=_now_ms(),
        )
        self._calls.append(record)
        return record

    async def is_blocked(self, a: Identity, b: Identity) -> bool:
        return (a, b) in self._blocks or (b, a) in self._blocks

    async def add_block(self, blocker_id: Identity, blocked_id: Identity) -> None:
        self._blocks.add((blocker_id, blocked_id))

    async def list_messages(self, a: Identity, b: Identity, limit: int = 200) -> List[Message]:
        pair = {(a, b), (b, a)}
        matching = [m for m in self._messages if (m.sender_id, m.receiver_id) in pair]
        return matching[-limit:] if limit > 0 else []

    async def list_calls(self, identity: Identity, limit: int = 50) -> List[CallRecord]:
        matching = [c for c in self._calls if identity in (c.caller_id, c.receiver_id)]
        matching.reverse()
        return matching[: max(limit, 0)]
