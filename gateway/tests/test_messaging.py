import unittest

from connecthub.messaging import MessagingRelay
from connecthub.models import FileReference
from connecthub.presence import PresenceRegistry
from connecthub.store import InMemoryChatStore

from .fakes import FailingStore, RecordingConnection


class MessagingRelayTests(unittest.IsolatedAsyncioTestCase):
    def _setup(self, store=None):
        self.store = store or InMemoryChatStore()
        self.presence = PresenceRegistry()
        self.relay = MessagingRelay(self.presence, self.store)
        self.alice = RecordingConnection()
        self.bob = RecordingConnection()
        self.presence.set_online(1, self.alice)
        self.presence.set_online(2, self.bob)
        self.alice.clear()
        self.bob.clear()

    async def test_text_message_is_persisted_and_delivered_to_both(self):
        self._setup()

        message = await self.relay.handle_send(self.alice, 1, 2, text="hi")

        self.assertEqual(self.store.messages, [message])
        sent = self.alice.of_type("message_sent")
        received = self.bob.of_type("receive_message")
        self.assertEqual(len(sent), 1)
        self.assertEqual(sent, received)
        self.assertEqual(sent[0]["text"], "hi")
        self.assertEqual(sent[0]["sender_id"], 1)
        self.assertEqual(sent[0]["receiver_id"], 2)
        self.assertIsNone(sent[0]["file"])

    async def test_file_only_message_has_null_text_on_both_copies(self):
        self._setup()
        file = FileReference(url="/uploads/cat.png", mime_type="image/png", name="cat.png")

        await self.relay.handle_send(self.alice, 1, 2, file=file)

        sent = self.alice.of_type("message_sent")[0]
        received = self.bob.of_type("receive_message")[0]
        self.assertIsNone(sent["text"])
        self.assertIsNone(received["text"])
        self.assertEqual(sent["id"], received["id"])
        self.assertEqual(received["file"], {"url": "/uploads/cat.png", "mime_type": "image/png", "name": "cat.png"})

    async def test_blocked_in_either_direction(self):
        self._setup()
        await self.store.add_block(1, 2)

        await self.relay.handle_send(self.alice, 1, 2, text="hi")
        await self.relay.handle_send(self.bob, 2, 1, text="hey")

        self.assertEqual(self.store.messages, [])
        self.assertEqual(self.alice.types(), ["message_blocked"])
        self.assertEqual(self.bob.types(), ["message_blocked"])
        self.assertEqual(self.bob.of_type("message_blocked")[0]["receiver_id"], 1)

    async def test_message_without_content_is_rejected(self):
        self._setup()

        await self.relay.handle_send(self.alice, 1, 2)
        await self.relay.handle_send(self.alice, 1, 2, text="   ")

        self.assertEqual(self.store.messages, [])
        errors = self.alice.of_type("message_error")
        self.assertEqual([e["code"] for e in errors], ["validation_error", "validation_error"])
        self.assertEqual(self.bob.frames, [])

    async def test_offline_receiver_still_persists_and_echoes(self):
        self._setup()

        message = await self.relay.handle_send(self.alice, 1, 99, text="later")

        self.assertIsNotNone(message)
        self.assertEqual(len(self.store.messages), 1)
        self.assertEqual(self.alice.of_type("message_sent")[0]["receiver_id"], 99)

    async def test_persistence_failure_reports_generic_error_without_delivery(self):
        self._setup(FailingStore())

        with self.assertLogs("connecthub.messaging", level="ERROR"):
            result = await self.relay.handle_send(self.alice, 1, 2, text="hi")

        self.assertIsNone(result)
        self.assertEqual(self.alice.of_type("message_error"), [
            {"code": "send_failed", "message": "Failed to send message"}
        ])
        self.assertEqual(self.bob.frames, [])

    async def test_typing_forwards_only_to_online_receiver(self):
        self._setup()

        self.assertTrue(self.relay.handle_typing(1, 2, True))
        self.assertTrue(self.relay.handle_typing(1, 2, False))
        self.assertFalse(self.relay.handle_typing(1, 42, True))

        self.assertEqual(
            self.bob.of_type("user_typing"),
            [{"identity": 1, "is_typing": True}, {"identity": 1, "is_typing": False}],
        )
        self.assertEqual(self.alice.frames, [])


if __name__ == "__main__":
    unittest.main()
