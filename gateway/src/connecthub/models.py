from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Union

from .errors import ValidationError

Identity = Union[int, str]

CALL_KINDS = ("audio", "video")
DEFAULT_CALL_KIND = "video"

CALL_MISSED = "missed"
CALL_REJECTED = "rejected"
CALL_COMPLETED = "completed"
CALL_STATUSES = (CALL_MISSED, CALL_REJECTED, CALL_COMPLETED)


def _now_ms() -> int:
    return int(time.time() * 1000)


def is_identity(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, str) and bool(value.strip())


def require_identity(value: Any, field: str) -> Identity:
    if not is_identity(value):
        raise ValidationError(f"{field} must be an integer or non-empty string")
    return value


def parse_identity(text: str) -> Identity:
    """Parse an identity taken from a URL path or bearer token."""

    text = text.strip()
    if text.isdigit():
        return int(text)
    return text


def elapsed_seconds(started_at_ms: int, ended_at_ms: int) -> int:
    elapsed_ms = max(0, ended_at_ms - started_at_ms)
    return (elapsed_ms + 500) // 1000


@dataclass(frozen=True)
class FileReference:
    url: str
    mime_type: str | None = None
    name: str | None = None

    def to_api_dict(self) -> dict[str, Any]:
        return {"url": self.url, "mime_type": self.mime_type, "name": self.name}


@dataclass(frozen=True)
class Message:
    """A persisted chat message; immutable once stored."""

    id: int
    sender_id: Identity
    receiver_id: Identity
    text: str | None
    file: FileReference | None
    created_at_ms: int

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "text": self.text,
            "file": self.file.to_api_dict() if self.file is not None else None,
            "created_at": self.created_at_ms,
        }


@dataclass(frozen=True)
class CallRecord:
    id: int
    caller_id: Identity
    receiver_id: Identity
    call_kind: str
    status: str
    duration_s: int | None
    started_at_ms: int | None
    ended_at_ms: int | None
    created_at_ms: int

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "caller_id": self.caller_id,
            "receiver_id": self.receiver_id,
            "call_kind": self.call_kind,
            "status": self.status,
            "duration": self.duration_s,
            "started_at": self.started_at_ms,
            "ended_at": self.ended_at_ms,
            "created_at": self.created_at_ms,
        }
