import asyncio
import sqlite3
import unittest

from snapgrid.config import BROADCAST_GLOBAL
from snapgrid.conversations import InMemoryConversationStore
from snapgrid.delivery import CONVERSATIONS_CHANGED, NEW_MESSAGE, DeliveryChannel
from snapgrid.errors import Forbidden, Internal, InvalidInput, NotFound
from snapgrid.identity import UserId
from snapgrid.messages import InMemoryMessageStore
from snapgrid.service import MessagingService

ALICE = UserId("alice")
BOB = UserId("bob")
CAROL = UserId("carol")


class FakeClock:
    def __init__(self, start_ms: int = 1_000) -> None:
        self.now_ms = start_ms

    def advance(self, ms: int = 1) -> None:
        self.now_ms += ms

    def now(self) -> int:
        return self.now_ms


class Recorder:
    def __init__(self) -> None:
        self.frames: list[dict] = []

    def __call__(self, frame: dict) -> None:
        self.frames.append(frame)

    def of_type(self, event: str) -> list[dict]:
        return [frame for frame in self.frames if frame["t"] == event]


class ServiceTestCase(unittest.IsolatedAsyncioTestCase):
    change_broadcast = "participants"

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.channel = DeliveryChannel()
        self.conversations = InMemoryConversationStore()
        self.service = MessagingService(
            conversations=self.conversations,
            messages=InMemoryMessageStore(),
            channel=self.channel,
            clock=self.clock.now,
            change_broadcast=self.change_broadcast,
        )

    async def send(self, sender: UserId, receiver: UserId, text: str):
        self.clock.advance(10)
        return await self.service.send_message(sender, receiver, text)

    async def history(self, viewer: UserId, peer: UserId) -> list[str]:
        return [message.text for message in await self.service.get_messages(viewer, peer)]


class SendPathTests(ServiceTestCase):
    async def test_first_message_creates_conversation(self):
        message = await self.send(ALICE, BOB, "hello")

        self.assertEqual(message.sender_id, ALICE)
        self.assertEqual(message.receiver_id, BOB)
        self.assertEqual(message.created_at_ms, self.clock.now())
        self.assertEqual(await self.history(ALICE, BOB), ["hello"])
        self.assertEqual(await self.history(BOB, ALICE), ["hello"])

    async def test_blank_text_rejected_before_any_write(self):
        for text in ("", "   ", "\n\t", None, 42):
            with self.assertRaises(InvalidInput):
                await self.service.send_message(ALICE, BOB, text)
        self.assertIsNone(await self.conversations.find(ALICE, BOB))

    async def test_text_is_stored_untrimmed(self):
        message = await self.send(ALICE, BOB, "  padded  ")
        self.assertEqual(message.text, "  padded  ")

    async def test_messaging_yourself_rejected(self):
        with self.assertRaises(InvalidInput):
            await self.service.send_message(ALICE, "alice", "hi")

    async def test_new_message_pushed_to_sender_and_receiver_sessions(self):
        alice_phone, alice_laptop, bob, carol = Recorder(), Recorder(), Recorder(), Recorder()
        self.channel.connect(ALICE, alice_phone)
        self.channel.connect(ALICE, alice_laptop)
        self.channel.connect(BOB, bob)
        self.channel.connect(CAROL, carol)

        message = await self.send(ALICE, BOB, "hello")

        for recorder in (alice_phone, alice_laptop, bob):
            pushed = recorder.of_type(NEW_MESSAGE)
            self.assertEqual(len(pushed), 1)
            self.assertEqual(pushed[0]["body"], message.to_api_dict())
            self.assertEqual(len(recorder.of_type(CONVERSATIONS_CHANGED)), 1)
        self.assertEqual(carol.of_type(NEW_MESSAGE), [])
        self.assertEqual(carol.of_type(CONVERSATIONS_CHANGED), [])

    async def test_concurrent_first_sends_share_one_conversation(self):
        results = await asyncio.gather(
            self.service.send_message(ALICE, BOB, "one"),
            self.service.send_message(ALICE, BOB, "two"),
        )

        conversation = await self.conversations.find(ALICE, BOB)
        self.assertEqual(len(await self.conversations.list_for_user(ALICE)), 1)
        self.assertEqual(conversation.message_ids, [message.msg_id for message in results])
        self.assertEqual(await self.history(BOB, ALICE), ["one", "two"])


class GlobalBroadcastTests(ServiceTestCase):
    change_broadcast = BROADCAST_GLOBAL

    async def test_conversations_changed_reaches_everyone(self):
        carol = Recorder()
        self.channel.connect(CAROL, carol)

        await self.send(ALICE, BOB, "hello")

        self.assertEqual(len(carol.of_type(CONVERSATIONS_CHANGED)), 1)
        self.assertEqual(carol.of_type(NEW_MESSAGE), [])


class VisibilityScenarioTests(ServiceTestCase):
    async def test_clear_then_peer_reply(self):
        await self.send(ALICE, BOB, "hello")
        self.assertEqual(await self.history(ALICE, BOB), ["hello"])

        self.clock.advance(10)
        await self.service.clear_chat(ALICE, BOB)
        self.assertEqual(await self.history(ALICE, BOB), [])
        self.assertEqual(await self.history(BOB, ALICE), ["hello"])

        await self.send(BOB, ALICE, "hi")
        self.assertEqual(await self.history(ALICE, BOB), ["hi"])
        self.assertEqual(await self.history(BOB, ALICE), ["hello", "hi"])

    async def test_send_in_same_millisecond_as_clear_still_visible(self):
        service = MessagingService(
            conversations=InMemoryConversationStore(),
            messages=InMemoryMessageStore(),
            channel=DeliveryChannel(),
        )
        await service.send_message(ALICE, BOB, "before")
        await service.clear_chat(ALICE, BOB)
        await service.send_message(BOB, ALICE, "after")

        self.assertEqual([m.text for m in await service.get_messages(ALICE, BOB)], ["after"])

    async def test_delete_hides_from_own_list_only(self):
        await self.send(ALICE, BOB, "hello")
        conversation = await self.conversations.find(ALICE, BOB)

        self.clock.advance(10)
        await self.service.delete_conversation(ALICE, conversation.conv_id)

        self.assertEqual(await self.service.list_conversations(ALICE), [])
        bob_list = await self.service.list_conversations(BOB)
        self.assertEqual([summary["id"] for summary in bob_list], [conversation.conv_id])
        self.assertEqual(await self.history(ALICE, BOB), [])

    async def test_new_message_restores_deleted_conversation_for_both(self):
        await self.send(ALICE, BOB, "hello")
        conversation = await self.conversations.find(ALICE, BOB)
        self.clock.advance(10)
        await self.service.delete_conversation(ALICE, conversation.conv_id)
        await self.service.clear_chat(BOB, ALICE)

        await self.send(ALICE, BOB, "again")

        self.assertEqual([s["lastMessage"] for s in await self.service.list_conversations(ALICE)], ["again"])
        self.assertEqual(await self.history(ALICE, BOB), ["again"])
        self.assertEqual(await self.history(BOB, ALICE), ["again"])

        restored = await self.conversations.get(conversation.conv_id)
        self.assertEqual(restored.deleted_by, set())
        self.assertEqual(restored.cleared_by, set())

    async def test_delete_and_clear_are_idempotent(self):
        await self.send(ALICE, BOB, "hello")
        conversation = await self.conversations.find(ALICE, BOB)

        self.clock.advance(10)
        first = await self.service.clear_chat(ALICE, BOB)
        self.clock.advance(10)
        second = await self.service.clear_chat(ALICE, BOB)
        self.assertEqual(first.cleared_at, second.cleared_at)

        first = await self.service.delete_conversation(BOB, conversation.conv_id)
        self.clock.advance(10)
        second = await self.service.delete_conversation(BOB, conversation.conv_id)
        self.assertEqual(first.deleted_at, second.deleted_at)
        self.assertEqual(first.deleted_by, second.deleted_by)

    async def test_delete_peer_hides_conversation(self):
        await self.send(ALICE, BOB, "hello")
        self.clock.advance(10)

        await self.service.delete_peer(BOB, ALICE)

        self.assertEqual(await self.service.list_conversations(BOB), [])
        self.assertEqual(len(await self.service.list_conversations(ALICE)), 1)

    async def test_hide_operations_notify_only_the_caller(self):
        await self.send(ALICE, BOB, "hello")
        alice, bob = Recorder(), Recorder()
        self.channel.connect(ALICE, alice)
        self.channel.connect(BOB, bob)
        conversation = await self.conversations.find(ALICE, BOB)

        await self.service.clear_chat(ALICE, BOB)
        await self.service.delete_conversation(ALICE, conversation.conv_id)
        await self.service.delete_peer(ALICE, BOB)

        self.assertEqual(len(alice.of_type(CONVERSATIONS_CHANGED)), 3)
        self.assertEqual(bob.of_type(CONVERSATIONS_CHANGED), [])


class ErrorTests(ServiceTestCase):
    async def test_delete_requires_participant(self):
        await self.send(ALICE, BOB, "hello")
        conversation = await self.conversations.find(ALICE, BOB)

        with self.assertRaises(Forbidden):
            await self.service.delete_conversation(CAROL, conversation.conv_id)

    async def test_unknown_conversation_or_pair(self):
        with self.assertRaises(NotFound):
            await self.service.delete_conversation(ALICE, "c_missing")
        with self.assertRaises(NotFound):
            await self.service.clear_chat(ALICE, CAROL)
        with self.assertRaises(NotFound):
            await self.service.delete_peer(ALICE, CAROL)

    async def test_history_is_not_shared_across_lookalike_pairs(self):
        await self.send(UserId("a\x1fb"), UserId("c"), "private to c")

        self.assertEqual(await self.history(UserId("a"), UserId("b\x1fc")), [])
        await self.send(UserId("a"), UserId("b\x1fc"), "separate")
        self.assertEqual(await self.history(UserId("c"), UserId("a\x1fb")), ["private to c"])
        self.assertEqual(await self.history(UserId("b\x1fc"), UserId("a")), ["separate"])

    async def test_foreign_conversation_from_store_is_refused(self):
        await self.send(BOB, CAROL, "between bob and carol")
        foreign = await self.conversations.find(BOB, CAROL)

        async def wrong_pair(user_a, user_b, now_ms=None):
            return foreign

        self.conversations.find = wrong_pair
        with self.assertLogs("snapgrid.service", level="ERROR"):
            with self.assertRaises(Forbidden):
                await self.service.get_messages(ALICE, BOB)
            with self.assertRaises(Forbidden):
                await self.service.clear_chat(ALICE, BOB)

    async def test_history_without_conversation_is_empty(self):
        self.assertEqual(await self.service.get_messages(ALICE, CAROL), [])

    async def test_storage_failures_surface_as_internal(self):
        class BrokenMessages(InMemoryMessageStore):
            async def create(self, *args, **kwargs):
                raise sqlite3.OperationalError("disk I/O error")

        service = MessagingService(
            conversations=InMemoryConversationStore(),
            messages=BrokenMessages(),
            channel=DeliveryChannel(),
        )
        with self.assertLogs("snapgrid.service", level="ERROR"):
            with self.assertRaises(Internal):
                await service.send_message(ALICE, BOB, "hello")


class ConversationListTests(ServiceTestCase):
    async def test_summaries_ordered_by_activity_with_previews(self):
        await self.send(ALICE, BOB, "to bob")
        await self.send(CAROL, ALICE, "from carol")
        await self.send(BOB, ALICE, "bob again")

        summaries = await self.service.list_conversations(ALICE)

        self.assertEqual([s["user"]["id"] for s in summaries], ["bob", "carol"])
        self.assertEqual(summaries[0]["lastMessage"], "bob again")
        self.assertEqual(summaries[0]["lastMessageTime"], summaries[0]["updatedAt"])
        self.assertEqual(summaries[1]["lastMessage"], "from carol")

    async def test_cleared_conversation_shows_no_preview(self):
        await self.send(ALICE, BOB, "hello")
        self.clock.advance(10)
        await self.service.clear_chat(ALICE, BOB)

        (summary,) = await self.service.list_conversations(ALICE)

        self.assertEqual(summary["lastMessage"], "")
        self.assertEqual(summary["lastMessageTime"], summary["updatedAt"])

    async def test_summary_reports_peer_presence(self):
        await self.send(ALICE, BOB, "hello")
        self.channel.connect(BOB, Recorder())

        (summary,) = await self.service.list_conversations(ALICE)

        self.assertEqual(summary["user"], {"id": "bob", "online": True})


if __name__ == "__main__":
    unittest.main()
