from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiohttp import WSMsgType, web

from .auth import Authenticator, TokenAuthenticator, TrustingAuthenticator
from .calls import CallTracker
from .config import GatewayConfig
from .errors import PersistenceError
from .frames import PROTOCOL_VERSION, error_frame
from .messaging import MessagingRelay
from .models import Identity, parse_identity
from .presence import Connection, PresenceRegistry
from .session import ConnectionSession
from .signaling import CallBroker
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteChatStore
from .store import ChatStore, InMemoryChatStore

logger = logging.getLogger(__name__)

MESSAGE_HISTORY_LIMIT = (200, 1000)
CALL_HISTORY_LIMIT = (50, 200)


class Runtime:
    def __init__(
        self,
        *,
        config: GatewayConfig,
        store: ChatStore,
        presence: PresenceRegistry,
        tracker: CallTracker,
        relay: MessagingRelay,
        broker: CallBroker,
        authenticator: Authenticator,
    ) -> None:
        self.config = config
        self.store = store
        self.presence = presence
        self.tracker = tracker
        self.relay = relay
        self.broker = broker
        self.authenticator = authenticator

    def open_session(self, connection: Connection) -> ConnectionSession:
        return ConnectionSession(
            connection,
            presence=self.presence,
            relay=self.relay,
            broker=self.broker,
            authenticator=self.authenticator,
        )


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _unauthorized() -> web.Response:
    return web.json_response({"code": "unauthorized", "message": "invalid bearer token"}, status=401)


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"code": "invalid_request", "message": message}, status=400)


def _unavailable() -> web.Response:
    return web.json_response({"code": "unavailable", "message": "storage unavailable"}, status=503)


def _with_no_store(response: web.Response) -> web.Response:
    response.headers["Cache-Control"] = "no-store"
    return response


async def _authenticate_request(request: web.Request) -> Identity | None:
    runtime: Runtime = request.app["runtime"]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    token = auth_header[len("Bearer ") :].strip()
    if not token:
        return None
    return await runtime.authenticator.resolve_token(token)


def _parse_limit(request: web.Request, bounds: tuple[int, int]) -> int | None:
    default, maximum = bounds
    raw = request.query.get("limit")
    if raw is None:
        return default
    try:
        limit = int(raw)
    except ValueError:
        return None
    if limit < 1:
        return None
    return min(limit, maximum)


async def handle_message_history(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    identity = await _authenticate_request(request)
    if identity is None:
        return _with_no_store(_unauthorized())
    limit = _parse_limit(request, MESSAGE_HISTORY_LIMIT)
    if limit is None:
        return _with_no_store(_invalid_request("limit must be a positive integer"))
    peer_id = parse_identity(request.match_info["peer_id"])
    try:
        messages = await runtime.store.list_messages(identity, peer_id, limit)
    except PersistenceError:
        logger.exception("failed to load messages between %r and %r", identity, peer_id)
        return _with_no_store(_unavailable())
    return _with_no_store(web.json_response({"messages": [m.to_api_dict() for m in messages]}))


async def handle_call_history(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    identity = await _authenticate_request(request)
    if identity is None:
        return _with_no_store(_unauthorized())
    limit = _parse_limit(request, CALL_HISTORY_LIMIT)
    if limit is None:
        return _with_no_store(_invalid_request("limit must be a positive integer"))
    try:
        calls = await runtime.store.list_calls(identity, limit)
    except PersistenceError:
        logger.exception("failed to load calls for %r", identity)
        return _with_no_store(_unavailable())
    return _with_no_store(web.json_response({"calls": [c.to_api_dict() for c in calls]}))


async def handle_presence(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    if await _authenticate_request(request) is None:
        return _with_no_store(_unauthorized())
    return _with_no_store(web.json_response({"identities": runtime.presence.online_identities()}))


def _default_authenticator(config: GatewayConfig) -> Authenticator:
    if config.tokens_file:
        return TokenAuthenticator.from_file(config.tokens_file)
    return TrustingAuthenticator()


def create_app(
    config: GatewayConfig | None = None,
    *,
    store: ChatStore | None = None,
    authenticator: Authenticator | None = None,
) -> web.Application:
    config = config or GatewayConfig()
    if store is None:
        if config.db_path is not None:
            store = SQLiteChatStore(SQLiteBackend(config.db_path))
        else:
            store = InMemoryChatStore()

    presence = PresenceRegistry()
    tracker = CallTracker()
    runtime = Runtime(
        config=config,
        store=store,
        presence=presence,
        tracker=tracker,
        relay=MessagingRelay(presence, store),
        broker=CallBroker(presence, tracker, store, ring_timeout_s=config.ring_timeout_s),
        authenticator=authenticator or _default_authenticator(config),
    )
    app = web.Application()
    app["runtime"] = runtime
    app["ws_config"] = {
        "ping_interval_s": config.ping_interval_s,
        "ping_miss_limit": config.ping_miss_limit,
        "max_msg_size": config.max_msg_size,
        "outbound_queue_size": config.outbound_queue_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/messages/{peer_id}", handle_message_history)
    app.router.add_get("/v1/calls", handle_call_history)
    app.router.add_get("/v1/presence", handle_presence)
    app.router.add_get("/v1/ws", websocket_handler)

    async def shutdown(_: web.Application) -> None:
        await runtime.broker.close()
        runtime.store.close()

    app.on_cleanup.append(shutdown)
    return app


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime: Runtime = request.app["runtime"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    last_activity = asyncio.get_running_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=ws_config["outbound_queue_size"])
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_running_loop().time()
        missed_heartbeats = 0

    def enqueue_frame(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    connection = Connection(send=enqueue_frame)
    session = runtime.open_session(connection)
    logger.info("connection %s opened from %s", connection.conn_id, request.remote)

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = asyncio.get_running_loop().time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    enqueue_frame({"v": PROTOCOL_VERSION, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    async def flush_and_close(code: int = 1000, message: bytes = b"") -> None:
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(writer_task, return_exceptions=True)
        await ws.close(code=code, message=message)

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except ValueError:
            await ws.close(code=1002, message=b"invalid json")
            return ws
        if not isinstance(payload, dict):
            await ws.close(code=1002, message=b"invalid handshake")
            return ws

        if payload.get("v") != PROTOCOL_VERSION:
            session.reply_error("invalid_request", "unsupported version", payload.get("id"))
            await flush_and_close()
            return ws
        if payload.get("t") != "authenticate":
            session.reply_error("invalid_request", "first frame must authenticate", payload.get("id"))
            await flush_and_close()
            return ws
        body = payload.get("body") or {}
        if not isinstance(body, dict) or not await session.authenticate(body, payload.get("id")):
            await flush_and_close(code=1008, message=b"authentication failed")
            return ws

        mark_activity()
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue_frame(error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict):
                    enqueue_frame(error_frame("invalid_request", "frame must be an object"))
                    continue

                mark_activity()
                if frame.get("v") != PROTOCOL_VERSION:
                    enqueue_frame(error_frame("invalid_request", "unsupported version", request_id=frame.get("id")))
                    continue
                await session.dispatch(frame)
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        session.close()
        logger.info("connection %s closed (identity %r)", connection.conn_id, session.identity)
        if not writer_task.done():
            try:
                outbound.put_nowait(None)
            except asyncio.QueueFull:
                writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
