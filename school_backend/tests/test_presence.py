import asyncio
import time
import unittest
from datetime import datetime, timezone

from school_backend.db import MESSAGES, InMemoryDbClient
from school_backend.errors import MalformedPayloadError, PersistenceError
from school_backend.presence import (
    RECEIVE_MESSAGE,
    ConnectionRegistry,
    DeliveryRouter,
)


class FakeConnection:
    """Records every frame pushed to it; optionally fails like a dead socket."""

    def __init__(self, fail: bool = False):
        self.frames = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("connection closed")
        self.frames.append(data)


class FailingDbClient(InMemoryDbClient):
    def insert_one(self, collection, record):
        raise PersistenceError("store unreachable")


class SlowDbClient(InMemoryDbClient):
    def insert_one(self, collection, record):
        time.sleep(0.3)
        return super().insert_one(collection, record)


class ConnectionRegistryTests(unittest.IsolatedAsyncioTestCase):
    async def test_blank_user_id_is_ignored(self):
        registry = ConnectionRegistry()
        handle = FakeConnection()
        self.assertIsNone(await registry.register(handle, ""))
        self.assertIsNone(await registry.register(handle, "   "))
        self.assertIsNone(await registry.register(handle, None))
        self.assertEqual(len(registry), 0)

    async def test_last_registration_wins(self):
        registry = ConnectionRegistry()
        old, new = FakeConnection(), FakeConnection()
        await registry.register(old, "alice")
        await registry.register(new, "alice")
        self.assertEqual(await registry.lookup("alice"), [("alice", new)])

    async def test_unregister_matches_handle_identity(self):
        registry = ConnectionRegistry()
        h1, h2 = FakeConnection(), FakeConnection()
        await registry.register(h1, "alice")
        await registry.register(h2, "bob")

        removed = await registry.unregister(h1)

        self.assertEqual(removed, ["alice"])
        self.assertEqual(await registry.online_users(), ["bob"])

    async def test_unregister_unknown_handle_is_a_noop(self):
        registry = ConnectionRegistry()
        await registry.register(FakeConnection(), "alice")
        self.assertEqual(await registry.unregister(FakeConnection()), [])
        self.assertEqual(len(registry), 1)

    async def test_overwritten_handle_disconnect_keeps_newer_entry(self):
        registry = ConnectionRegistry()
        old, new = FakeConnection(), FakeConnection()
        await registry.register(old, "alice")
        await registry.register(new, "alice")

        self.assertEqual(await registry.unregister(old), [])
        self.assertEqual(await registry.lookup("alice"), [("alice", new)])


class DeliveryRouterTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.router = DeliveryRouter(self.db)

    def stored_messages(self):
        return self.db.find(MESSAGES)

    async def test_router_uses_registry_it_is_given(self):
        shared = ConnectionRegistry()
        router = DeliveryRouter(self.db, registry=shared)
        self.assertIs(router.registry, shared)

        bob = FakeConnection()
        await shared.register(bob, "bob")
        await router.submit_message("alice", "bob", "hi")

        self.assertEqual(len(bob.frames), 1)
        self.assertEqual(bob.frames[0]["data"]["content"], "hi")

    async def test_sender_and_receiver_each_get_one_push(self):
        h1, h2 = FakeConnection(), FakeConnection()
        await self.router.connect(h1)
        await self.router.register(h1, "alice")
        await self.router.connect(h2)
        await self.router.register(h2, "bob")

        record = await self.router.submit_message("alice", "bob", "hi")

        stored = self.stored_messages()
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0]["content"], "hi")
        self.assertEqual(stored[0]["id"], record.id)
        for handle in (h1, h2):
            self.assertEqual(len(handle.frames), 1)
            frame = handle.frames[0]
            self.assertEqual(frame["event"], RECEIVE_MESSAGE)
            self.assertEqual(frame["data"]["id"], record.id)
            self.assertEqual(frame["data"]["content"], "hi")

    async def test_unregistered_receiver_is_skipped(self):
        alice = FakeConnection()
        await self.router.register(alice, "alice")

        record = await self.router.submit_message("alice", "carol", "hello")

        self.assertIsNotNone(record.id)
        self.assertEqual(len(self.stored_messages()), 1)
        self.assertEqual(len(alice.frames), 1)
        self.assertEqual(alice.frames[0]["data"]["receiver"], "carol")

    async def test_disconnected_user_receives_nothing(self):
        alice = FakeConnection()
        await self.router.register(alice, "alice")
        await self.router.disconnect(alice, "transport close")

        await self.router.submit_message("bob", "alice", "bye")

        self.assertEqual(alice.frames, [])
        self.assertEqual(len(self.stored_messages()), 1)

    async def test_persistence_failure_pushes_nothing(self):
        router = DeliveryRouter(FailingDbClient())
        h1, h2 = FakeConnection(), FakeConnection()
        await router.register(h1, "alice")
        await router.register(h2, "bob")

        with self.assertRaises(PersistenceError):
            await router.submit_message("alice", "bob", "hi")

        self.assertEqual(h1.frames, [])
        self.assertEqual(h2.frames, [])
        self.assertEqual(await router.registry.online_users(), ["alice", "bob"])

    async def test_persistence_timeout_is_a_failure(self):
        router = DeliveryRouter(SlowDbClient(), persistence_timeout=0.05)
        handle = FakeConnection()
        await router.register(handle, "alice")

        with self.assertRaises(PersistenceError):
            await router.submit_message("alice", "bob", "late")
        self.assertEqual(handle.frames, [])

    async def test_timed_out_write_may_still_land_in_store(self):
        db = SlowDbClient()
        router = DeliveryRouter(db, persistence_timeout=0.05)

        with self.assertRaises(PersistenceError):
            await router.persist_message("alice", "bob", "late")
        # The store call keeps running in its worker thread after the timeout.
        await asyncio.sleep(0.5)

        stored = db.find(MESSAGES)
        self.assertEqual([m["content"] for m in stored], ["late"])

    async def test_reregistration_moves_delivery_to_new_handle(self):
        old, new = FakeConnection(), FakeConnection()
        await self.router.register(old, "bob")
        await self.router.register(new, "bob")

        await self.router.submit_message("alice", "bob", "ping")

        self.assertEqual(old.frames, [])
        self.assertEqual(len(new.frames), 1)

    async def test_message_to_self_is_pushed_once_per_lookup(self):
        handle = FakeConnection()
        await self.router.register(handle, "alice")

        await self.router.submit_message("alice", "alice", "note to self")

        self.assertEqual(len(handle.frames), 2)

    async def test_failed_push_does_not_fail_submit(self):
        broken, bob = FakeConnection(fail=True), FakeConnection()
        await self.router.register(broken, "alice")
        await self.router.register(bob, "bob")

        record = await self.router.submit_message("alice", "bob", "hi")

        self.assertIsNotNone(record.id)
        self.assertEqual(len(bob.frames), 1)
        # The broken handle stays registered until its own disconnect.
        self.assertIn("alice", await self.router.registry.online_users())

    async def test_timestamp_is_assigned_by_server(self):
        before = datetime.now(timezone.utc)
        record = await self.router.submit_message("alice", "bob", "hi")
        after = datetime.now(timezone.utc)

        self.assertLessEqual(before, record.timestamp)
        self.assertLessEqual(record.timestamp, after)
        self.assertEqual(self.stored_messages()[0]["timestamp"], record.timestamp)

    async def test_blank_fields_are_rejected_before_persisting(self):
        with self.assertRaises(MalformedPayloadError):
            await self.router.submit_message("alice", "", "hi")
        self.assertEqual(self.stored_messages(), [])


if __name__ == "__main__":
    unittest.main()
