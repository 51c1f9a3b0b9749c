import asyncio
import json
from typing import Any, Callable

from aiohttp import ClientWebSocketResponse, WSMessage, WSMsgType


async def _receive_with_deadline(ws: ClientWebSocketResponse, deadline: float) -> WSMessage:
    loop = asyncio.get_running_loop()
    remaining = deadline - loop.time()
    if remaining <= 0:
        raise asyncio.TimeoutError("Timed out waiting for websocket message")
    return await ws.receive(timeout=remaining)


def _is_closed(msg: WSMessage) -> bool:
    return msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED)


async def _parse_json_payload(ws: ClientWebSocketResponse, msg: WSMessage) -> Any | None:
    if msg.type == WSMsgType.ERROR:
        raise AssertionError(f"WebSocket error while waiting for message: {ws.exception()}")
    if _is_closed(msg):
        raise AssertionError("WebSocket closed while waiting for message")
    if msg.type != WSMsgType.TEXT:
        return None
    try:
        payload = json.loads(msg.data)
    except ValueError:
        return None
    if isinstance(payload, dict) and payload.get("t") == "ping":
        await ws.send_json({"v": 1, "t": "pong", "id": payload.get("id")})
        return None
    return payload


async def recv_json_until(
    ws: ClientWebSocketResponse,
    *,
    predicate: Callable[[Any], bool],
    timeout: float = 2.0,
) -> Any:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        msg = await _receive_with_deadline(ws, deadline)
        payload = await _parse_json_payload(ws, msg)
        if payload is None:
            continue
        if predicate(payload):
            return payload


async def recv_event(ws: ClientWebSocketResponse, t: str, *, timeout: float = 2.0) -> Any:
    return await recv_json_until(ws, predicate=lambda p: p.get("t") == t, timeout=timeout)


async def assert_no_app_messages(ws: ClientWebSocketResponse, *, timeout: float) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        try:
            msg = await _receive_with_deadline(ws, deadline)
        except asyncio.TimeoutError:
            return
        payload = await _parse_json_payload(ws, msg)
        if payload is None:
            continue
        raise AssertionError(f"Unexpected websocket message: {payload}")
