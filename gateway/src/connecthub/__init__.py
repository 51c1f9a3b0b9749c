"""Presence, messaging and call signaling gateway."""

from .calls import ActiveCall, CallTracker, PendingCall
from .config import GatewayConfig
from .messaging import MessagingRelay
from .presence import Connection, PresenceRegistry
from .session import ConnectionSession
from .signaling import CallBroker
from .store import ChatStore, InMemoryChatStore
from .ws_transport import create_app

__all__ = [
    "ActiveCall",
    "CallBroker",
    "CallTracker",
    "ChatStore",
    "Connection",
    "ConnectionSession",
    "GatewayConfig",
    "InMemoryChatStore",
    "MessagingRelay",
    "PendingCall",
    "PresenceRegistry",
    "create_app",
]
