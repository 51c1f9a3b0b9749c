import unittest

from connecthub.calls import CallTracker


class CallTrackerTests(unittest.TestCase):
    def test_pending_is_keyed_by_ordered_pair(self):
        tracker = CallTracker()
        tracker.create_pending("a", "b", "audio")

        self.assertIsNone(tracker.get_pending("b", "a"))
        self.assertIsNone(tracker.remove_pending("b", "a"))
        self.assertEqual(tracker.remove_pending("a", "b").call_kind, "audio")
        self.assertIsNone(tracker.get_pending("a", "b"))

    def test_promote_recovers_kind_and_clears_pending(self):
        tracker = CallTracker()
        tracker.create_pending(1, 2, "audio")

        active = tracker.promote_to_active(1, 2, started_at_ms=500)

        self.assertEqual((active.caller_id, active.receiver_id), (1, 2))
        self.assertEqual(active.call_kind, "audio")
        self.assertEqual(active.started_at_ms, 500)
        self.assertIsNone(tracker.get_pending(1, 2))
        self.assertEqual(len(tracker), 1)

    def test_promote_without_pending_defaults_to_video(self):
        tracker = CallTracker()

        active = tracker.promote_to_active(1, 2, started_at_ms=0)

        self.assertEqual(active.call_kind, "video")

    def test_active_lookup_works_in_either_order(self):
        tracker = CallTracker()
        tracker.promote_to_active("caller", "callee", started_at_ms=0)

        self.assertIsNotNone(tracker.find_active("callee", "caller"))
        removed = tracker.remove_active("callee", "caller")
        self.assertEqual(removed.caller_id, "caller")
        self.assertIsNone(tracker.find_active("caller", "callee"))
        self.assertIsNone(tracker.remove_active("caller", "callee"))

    def test_involving_lists_both_roles(self):
        tracker = CallTracker()
        tracker.create_pending("a", "b", "video")
        tracker.create_pending("c", "a", "audio")
        tracker.create_pending("c", "d", "audio")
        tracker.promote_to_active("e", "a", started_at_ms=0)

        pending = {(p.caller_id, p.receiver_id) for p in tracker.pending_involving("a")}
        self.assertEqual(pending, {("a", "b"), ("c", "a")})
        self.assertEqual([c.caller_id for c in tracker.active_involving("a")], ["e"])
        self.assertEqual(tracker.active_involving("d"), [])


if __name__ == "__main__":
    unittest.main()
