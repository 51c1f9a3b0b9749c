from __future__ import annotations

import logging

from .errors import BlockedError, PersistenceError, ValidationError
from .frames import event_frame
from .models import FileReference, Identity, Message
from .presence import Connection, PresenceRegistry
from .store import ChatStore

logger = logging.getLogger(__name__)


def _clean_text(text: str | None) -> str | None:
    if text is None:
        return None
    if not isinstance(text, str):
        raise ValidationError("text must be a string")
    return text if text.strip() else None


class MessagingRelay:
    """Validates, persists and routes chat messages and typing notices."""

    def __init__(self, presence: PresenceRegistry, store: ChatStore) -> None:
        self._presence = presence
        self._store = store

    async def handle_send(
        self,
        sender: Connection,
        sender_id: Identity,
        receiver_id: Identity,
        text: str | None = None,
        file: FileReference | None = None,
    ) -> Message | None:
        """Persist a message and deliver it to both parties.

        The receiver gets ``receive_message`` when online; the sender always
        gets ``message_sent`` with the same payload. Failures are reported to
        the sender only and nothing is delivered.
        """

        try:
            if await self._store.is_blocked(sender_id, receiver_id):
                raise BlockedError("You cannot message this user")
            clean_text = _clean_text(text)
            if clean_text is None and file is None:
                raise ValidationError("Message must have text or a file")
            message = await self._store.insert_message(sender_id, receiver_id, clean_text, file)
        except BlockedError as exc:
            sender.deliver(event_frame("message_blocked", {"receiver_id": receiver_id, "message": str(exc)}))
            return None
        except ValidationError as exc:
            sender.deliver(event_frame("message_error", {"code": exc.code, "message": str(exc)}))
            return None
        except PersistenceError:
            logger.exception("failed to store message from %r to %r", sender_id, receiver_id)
            sender.deliver(event_frame("message_error", {"code": "send_failed", "message": "Failed to send message"}))
            return None

        payload = message.to_api_dict()
        receiver = self._presence.resolve(receiver_id)
        if receiver is not None:
            receiver.deliver(event_frame("receive_message", payload))
        sender.deliver(event_frame("message_sent", payload))
        logger.debug("message %s %r -> %r delivered=%s", message.id, sender_id, receiver_id, receiver is not None)
        return message

    def handle_typing(self, sender_id: Identity, receiver_id: Identity, is_typing: bool) -> bool:
        receiver = self._presence.resolve(receiver_id)
        if receiver is None:
            return False
        receiver.deliver(event_frame("user_typing", {"identity": sender_id, "is_typing": is_typing}))
        return True
