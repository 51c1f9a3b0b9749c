from __future__ import annotations

from typing import Any

PROTOCOL_VERSION = 1


def event_frame(t: str, body: dict[str, Any], *, request_id: str | None = None) -> dict[str, Any]:
    frame: dict[str, Any] = {"v": PROTOCOL_VERSION, "t": t, "body": body}
    if request_id is not None:
        frame["id"] = request_id
    return frame


def error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": PROTOCOL_VERSION, "t": "error", "id": request_id, "body": {"code": code, "message": message}}
