from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from .frames import event_frame
from .models import Identity

logger = logging.getLogger(__name__)

_conn_ids = itertools.count(1)


@dataclass(eq=False)
class Connection:
    """Addressable endpoint of one live client channel.

    ``send`` must not block: the transport enqueues the frame for its writer.
    """

    send: Callable[[dict], None]
    conn_id: str = field(default_factory=lambda: f"c{next(_conn_ids)}")

    def deliver(self, frame: dict[str, Any]) -> None:
        self.send(frame)


class PresenceRegistry:
    """Maps each online identity to the connection that authenticated last.

    All mutations are synchronous; callers run on a single event loop.
    """

    def __init__(self) -> None:
        self._online: Dict[Identity, Connection] = {}
        self._connections: List[Connection] = []

    def set_online(self, identity: Identity, connection: Connection) -> None:
        if connection not in self._connections:
            self._connections.append(connection)
        previous = self._online.get(identity)
        if previous is not None and previous is not connection:
            logger.info("identity %r moved from %s to %s", identity, previous.conn_id, connection.conn_id)
        self._online[identity] = connection
        logger.info("identity %r online on %s", identity, connection.conn_id)

        self.broadcast(event_frame("user_online", {"identity": identity}), exclude=connection)
        connection.deliver(event_frame("online_users", {"identities": self.online_identities()}))

    def set_offline(self, connection: Connection) -> Identity | None:
        """Drop ``connection``; return its identity if it still owned one."""

        if connection in self._connections:
            self._connections.remove(connection)

        identity = None
        found = False
        for candidate, handle in self._online.items():
            if handle is connection:
                identity = candidate
                found = True
                break
        if not found:
            return None

        del self._online[identity]
        logger.info("identity %r offline", identity)
        self.broadcast(event_frame("user_offline", {"identity": identity}), exclude=connection)
        return identity

    def resolve(self, identity: Identity) -> Connection | None:
        return self._online.get(identity)

    def is_online(self, identity: Identity) -> bool:
        return identity in self._online

    def online_identities(self) -> list[Identity]:
        return list(self._online)

    def broadcast(self, frame: dict[str, Any], *, exclude: Connection | None = None) -> None:
        for connection in list(self._connections):
            if connection is exclude:
                continue
            connection.deliver(frame)
