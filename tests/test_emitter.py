import json
import unittest
from unittest import mock

from panelsync import emitter as emitter_module
from panelsync.emitter import PatchEmitter
from panelsync.exceptions import SubscriberDisconnectedError, SubscriberOverflowError
from panelsync.observed import DeepObserver
from panelsync.patches import MessageType, decode_message
from panelsync.status import SubscriberStatus
from panelsync.subscriber import Subscriber

from fakes import FakeSubscriber, MemoryChannel


class TestPatchEmitter(unittest.TestCase):

    def setUp(self):
        self.emitter = PatchEmitter()
        self.tree = DeepObserver(self.emitter).observe({"a": {"b": 1}})

    def test_every_subscriber_gets_the_same_patches_in_order(self):
        subscribers = [FakeSubscriber(f"s{i}") for i in range(5)]
        for subscriber in subscribers:
            self.emitter.add(subscriber)

        self.tree["a"]["b"] = 2
        self.tree["a"]["c"] = {"d": 3}
        del self.tree["a"]["b"]

        expected = subscribers[0].received
        self.assertEqual(len(expected), 3)
        for subscriber in subscribers[1:]:
            self.assertEqual(subscriber.received, expected)
        self.assertEqual([decode_message(m)[1] for m in expected], [
            {"path": ["a", "b"], "value": 2},
            {"path": ["a", "c"], "value": {"d": 3}},
            {"path": ["a", "b"], "delete": True},
        ])

    def test_patch_is_encoded_once_per_mutation(self):
        for i in range(3):
            self.emitter.add(FakeSubscriber(f"s{i}"))
        with mock.patch.object(emitter_module, "encode_patch", wraps=emitter_module.encode_patch) as encode:
            self.tree["a"]["b"] = 5
        self.assertEqual(encode.call_count, 1)

    def test_failing_subscriber_is_dropped_others_still_receive(self):
        first = FakeSubscriber("first")
        broken = FakeSubscriber("broken", error=SubscriberDisconnectedError("broken", reason="gone"))
        last = FakeSubscriber("last")
        for subscriber in (first, broken, last):
            self.emitter.add(subscriber)

        with self.assertLogs("panelsync", level="WARNING"):
            delivered = self.emitter.broadcast("hello")

        self.assertEqual(delivered, 2)
        self.assertEqual(first.received, ["hello"])
        self.assertEqual(last.received, ["hello"])
        self.assertEqual(self.emitter.subscriber_count, 2)
        self.assertNotIn(broken, self.emitter.subscribers)

    def test_unexpected_error_is_logged_and_isolated(self):
        broken = FakeSubscriber("broken", error=RuntimeError("boom"))
        healthy = FakeSubscriber("healthy")
        self.emitter.add(broken)
        self.emitter.add(healthy)

        with self.assertLogs("panelsync", level="ERROR"):
            self.tree["a"]["b"] = 9

        self.assertEqual(len(healthy.received), 1)
        self.assertEqual(self.emitter.subscribers, [healthy])

    def test_broadcast_event(self):
        subscriber = FakeSubscriber("s")
        self.emitter.add(subscriber)

        self.emitter.broadcast_event(MessageType.STOP_WATCHING_PLAYER, {"uuid": "u1"})

        self.assertEqual(json.loads(subscriber.received[0]), {"type": "stopWatchingPlayer", "payload": {"uuid": "u1"}})

    def test_discard_unknown_subscriber_is_harmless(self):
        self.emitter.discard(FakeSubscriber("ghost"))
        self.assertEqual(self.emitter.subscriber_count, 0)


class TestSubscriberBackpressure(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.emitter = PatchEmitter()
        self.tree = DeepObserver(self.emitter).observe({"n": 0})

    async def test_slow_subscriber_is_disconnected_on_overflow(self):
        slow = Subscriber(MemoryChannel("slow"), max_pending_messages=2, subscriber_id="slow")
        fast = FakeSubscriber("fast")
        self.emitter.add(slow)
        self.emitter.add(fast)

        with self.assertLogs("panelsync", level="WARNING") as cm:
            for i in range(1, 4):
                self.tree["n"] = i

        self.assertTrue(any("slow" in line for line in cm.output))
        self.assertIs(slow.status, SubscriberStatus.DISCONNECTED)
        self.assertEqual(self.emitter.subscribers, [fast])
        self.assertEqual(len(fast.received), 3)

    async def test_deliver_after_disconnect_raises(self):
        subscriber = Subscriber(MemoryChannel(), max_pending_messages=1)
        subscriber.deliver("one")
        with self.assertRaises(SubscriberOverflowError):
            subscriber.deliver("two")
        with self.assertRaises(SubscriberDisconnectedError):
            subscriber.deliver("three")

    async def test_writer_sends_in_order_and_flushes_on_close(self):
        channel = MemoryChannel()
        subscriber = Subscriber(channel)
        subscriber.start_writer()
        for i in range(10):
            subscriber.deliver(f"m{i}")

        await subscriber.close_async()

        self.assertEqual(channel.sent, [f"m{i}" for i in range(10)])
        self.assertTrue(channel.closed)
        self.assertIs(subscriber.status, SubscriberStatus.DISCONNECTED)

    async def test_channel_failure_disconnects_subscriber(self):
        channel = MemoryChannel()
        channel.fail_sends = True
        subscriber = Subscriber(channel)
        task = subscriber.start_writer()

        subscriber.deliver("lost")
        await task

        self.assertIs(subscriber.status, SubscriberStatus.DISCONNECTED)
        self.assertTrue(channel.closed)

    async def test_lifecycle_transitions_are_checked(self):
        subscriber = Subscriber(MemoryChannel())
        with self.assertRaises(RuntimeError):
            subscriber.mark_synced()
        subscriber.mark_authenticated()
        with self.assertRaises(RuntimeError):
            subscriber.mark_authenticated()
        subscriber.mark_synced()
        self.assertIs(subscriber.status, SubscriberStatus.SYNCED)


if __name__ == '__main__':
    unittest.main()
