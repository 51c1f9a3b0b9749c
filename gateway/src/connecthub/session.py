from __future__ import annotations

import enum
import logging
from typing import Any, Awaitable, Callable, Dict

from .auth import Authenticator
from .errors import ForbiddenError, GatewayError, ValidationError
from .frames import error_frame, event_frame
from .messaging import MessagingRelay
from .models import FileReference, Identity, is_identity, require_identity
from .presence import Connection, PresenceRegistry
from .signaling import CallBroker

logger = logging.getLogger(__name__)

Handler = Callable[[dict, Any], Awaitable[None]]


class SessionState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


def _optional_str(body: dict, field: str) -> str | None:
    value = body.get(field)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    return value


def _file_reference(body: dict) -> FileReference | None:
    url = _optional_str(body, "file_url")
    if not url:
        return None
    return FileReference(url=url, mime_type=_optional_str(body, "file_type"), name=_optional_str(body, "file_name"))


class ConnectionSession:
    """Lifecycle of one client connection.

    The transport feeds inbound frames one at a time, which keeps events from
    the same client in order. ``close`` must be called exactly when the
    transport is done with the connection; repeated calls are ignored.
    """

    def __init__(
        self,
        connection: Connection,
        *,
        presence: PresenceRegistry,
        relay: MessagingRelay,
        broker: CallBroker,
        authenticator: Authenticator,
    ) -> None:
        self.connection = connection
        self.state = SessionState.UNAUTHENTICATED
        self.identity: Identity | None = None
        self._presence = presence
        self._relay = relay
        self._broker = broker
        self._authenticator = authenticator
        self._handlers: Dict[str, Handler] = {
            "send_message": self._on_send_message,
            "typing_start": self._on_typing_start,
            "typing_stop": self._on_typing_stop,
            "call_request": self._on_call_request,
            "call_accepted": self._on_call_accepted,
            "call_rejected": self._on_call_rejected,
            "webrtc_offer": self._on_webrtc_offer,
            "webrtc_answer": self._on_webrtc_answer,
            "webrtc_ice_candidate": self._on_webrtc_ice_candidate,
            "call_ended": self._on_call_ended,
        }

    @property
    def authenticated(self) -> bool:
        return self.state is SessionState.AUTHENTICATED

    def reply_error(self, code: str, message: str, request_id: Any = None) -> None:
        self.connection.deliver(error_frame(code, message, request_id=request_id))

    async def authenticate(self, body: dict, request_id: Any = None) -> bool:
        """Handle the ``authenticate`` frame; False means the socket should close."""

        if self.state is not SessionState.UNAUTHENTICATED:
            self.reply_error("already_authenticated", "session already authenticated", request_id)
            return self.authenticated

        identity = body.get("identity")
        token = body.get("token")
        if not is_identity(identity) or (token is not None and not isinstance(token, str)):
            self.reply_error("invalid_request", "identity required", request_id)
            return False
        if not await self._authenticator.authenticate(identity, token):
            self.reply_error("unauthorized", "identity rejected", request_id)
            return False
        if self.state is not SessionState.UNAUTHENTICATED:
            # Closed while the authenticator was suspended.
            return False

        self.identity = identity
        self.state = SessionState.AUTHENTICATED
        self.connection.deliver(event_frame("authenticated", {"identity": identity}, request_id=request_id))
        self._presence.set_online(identity, self.connection)
        return True

    async def dispatch(self, frame: dict) -> None:
        frame_type = frame.get("t")
        request_id = frame.get("id")
        body = frame.get("body") or {}
        if not isinstance(body, dict):
            self.reply_error("invalid_request", "body must be an object", request_id)
            return

        if frame_type == "ping":
            self.connection.deliver({"v": 1, "t": "pong", "id": request_id})
            return
        if frame_type == "pong":
            return
        if frame_type == "authenticate":
            await self.authenticate(body, request_id)
            return
        if not self.authenticated:
            self.reply_error("unauthenticated", "authenticate first", request_id)
            return

        handler = self._handlers.get(frame_type)
        if handler is None:
            self.reply_error("invalid_request", "unknown frame type", request_id)
            return
        try:
            await handler(body, request_id)
        except GatewayError as exc:
            self.reply_error(exc.code, str(exc), request_id)

    def close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        identity = self._presence.set_offline(self.connection)
        if identity is None:
            return
        # Counterparts drop local media state for a call with this identity.
        self._presence.broadcast(event_frame("call_ended", {"sender_id": identity}), exclude=self.connection)
        self._broker.abandon(identity)

    def _own(self, body: dict, field: str) -> Identity:
        value = body.get(field)
        if value is None:
            return self.identity
        if value != self.identity:
            raise ForbiddenError(f"{field} does not match the authenticated identity")
        return self.identity

    async def _on_send_message(self, body: dict, request_id: Any) -> None:
        sender_id = self._own(body, "sender_id")
        receiver_id = require_identity(body.get("receiver_id"), "receiver_id")
        await self._relay.handle_send(
            self.connection,
            sender_id,
            receiver_id,
            text=_optional_str(body, "text"),
            file=_file_reference(body),
        )

    async def _on_typing_start(self, body: dict, request_id: Any) -> None:
        self._typing(body, True)

    async def _on_typing_stop(self, body: dict, request_id: Any) -> None:
        self._typing(body, False)

    def _typing(self, body: dict, is_typing: bool) -> None:
        sender_id = self._own(body, "sender_id")
        receiver_id = require_identity(body.get("receiver_id"), "receiver_id")
        self._relay.handle_typing(sender_id, receiver_id, is_typing)

    async def _on_call_request(self, body: dict, request_id: Any) -> None:
        caller_id = self._own(body, "caller_id")
        receiver_id = require_identity(body.get("receiver_id"), "receiver_id")
        await self._broker.request_call(self.connection, caller_id, receiver_id, body.get("call_kind"))

    async def _on_call_accepted(self, body: dict, request_id: Any) -> None:
        caller_id = require_identity(body.get("caller_id"), "caller_id")
        receiver_id = self._own(body, "receiver_id")
        self._broker.accept_call(caller_id, receiver_id)

    async def _on_call_rejected(self, body: dict, request_id: Any) -> None:
        caller_id = require_identity(body.get("caller_id"), "caller_id")
        receiver_id = self._own(body, "receiver_id")
        self._broker.reject_call(caller_id, receiver_id)

    async def _on_webrtc_offer(self, body: dict, request_id: Any) -> None:
        self._negotiate("offer", body, "payload")

    async def _on_webrtc_answer(self, body: dict, request_id: Any) -> None:
        self._negotiate("answer", body, "payload")

    async def _on_webrtc_ice_candidate(self, body: dict, request_id: Any) -> None:
        self._negotiate("ice_candidate", body, "candidate")

    def _negotiate(self, kind: str, body: dict, field: str) -> None:
        sender_id = self._own(body, "sender_id")
        receiver_id = require_identity(body.get("receiver_id"), "receiver_id")
        if field not in body:
            raise ValidationError(f"{field} required")
        self._broker.relay_negotiation(kind, sender_id, receiver_id, body[field])

    async def _on_call_ended(self, body: dict, request_id: Any) -> None:
        sender_id = self._own(body, "sender_id")
        receiver_id = require_identity(body.get("receiver_id"), "receiver_id")
        self._broker.end_call(sender_id, receiver_id)
