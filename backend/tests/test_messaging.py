import asyncio
import unittest

from support import BUYER, OUTSIDER, SELLER, DatabaseTestCase

from regateo.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from regateo.core.utils import conversation_key, utcnow
from regateo.models.conversation import Conversation
from regateo.schemas.conversation import ConversationStatus, MessageType


class ConversationKeyTest(unittest.TestCase):
    def test_key_is_order_independent(self):
        self.assertEqual(conversation_key("b", "a"), "a_b")
        self.assertEqual(conversation_key("a", "b"), conversation_key("b", "a"))

    def test_underscores_in_ids_do_not_collide(self):
        self.assertNotEqual(conversation_key("a_b", "c"), conversation_key("a", "b_c"))
        self.assertNotEqual(conversation_key("a\\", "_b"), conversation_key("a", "\\_b"))


class GetOrCreateTest(DatabaseTestCase):
    async def test_commutative_and_idempotent(self):
        first = await self.messaging.get_or_create_conversation(BUYER, SELLER, {"tool_id": "tool-1"})
        second = await self.messaging.get_or_create_conversation(SELLER, BUYER)

        self.assertEqual(first.id, second.id)
        self.assertEqual(first.id, conversation_key(BUYER, SELLER))
        self.assertEqual(sorted(first.participants), sorted([BUYER, SELLER]))
        self.assertEqual(second.details, {"tool_id": "tool-1"})
        self.assertEqual(second.version, 1)

    async def test_concurrent_first_contact_creates_one_conversation(self):
        results = await asyncio.gather(
            self.messaging.get_or_create_conversation(BUYER, SELLER),
            self.messaging.get_or_create_conversation(SELLER, BUYER),
        )
        self.assertEqual(results[0].id, results[1].id)

        conversations = await self.messaging.list_user_conversations(BUYER)
        self.assertEqual(len(conversations), 1)

    async def test_invalid_participants(self):
        with self.assertRaises(ValidationError):
            await self.messaging.get_or_create_conversation(BUYER, BUYER)
        with self.assertRaises(ValidationError):
            await self.messaging.get_or_create_conversation(BUYER, "")

    async def test_find_between_users(self):
        self.assertIsNone(await self.messaging.find_conversation_between_users(BUYER, SELLER))
        created = await self.messaging.get_or_create_conversation(BUYER, SELLER)
        found = await self.messaging.find_conversation_between_users(SELLER, BUYER)
        self.assertEqual(found.id, created.id)

    async def test_ids_with_underscores_get_their_own_conversation(self):
        first = await self.messaging.get_or_create_conversation("a_b", "c")
        second = await self.messaging.get_or_create_conversation("a", "b_c")

        self.assertNotEqual(first.id, second.id)
        self.assertEqual(sorted(first.participants), ["a_b", "c"])
        self.assertEqual(sorted(second.participants), ["a", "b_c"])

        found = await self.messaging.find_conversation_between_users("b_c", "a")
        self.assertEqual(found.id, second.id)
        self.assertIsNone(await self.messaging.find_conversation_between_users("a", "c"))

    async def test_row_of_another_pair_is_never_returned(self):
        # Fila antigua cuya clave coincide con la de otro par
        async with self.session_factory() as session:
            async with session.begin():
                session.add(Conversation(
                    id=conversation_key("a", "b_c"), participant_a="a_b", participant_b="c",
                    last_message_at=utcnow(), last_message_text="private", unread_by_users=[],
                    user_status={}, details={}, created_at=utcnow(), updated_at=utcnow(),
                ))

        with self.assertRaises(ConflictError):
            await self.messaging.find_conversation_between_users("a", "b_c")
        with self.assertRaises(ConflictError):
            await self.messaging.get_or_create_conversation("b_c", "a")


class SendMessageTest(DatabaseTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.conversation = await self.messaging.get_or_create_conversation(BUYER, SELLER)

    async def test_unread_set_is_replaced_by_recipients(self):
        await self.messaging.send_message(self.conversation.id, BUYER, "Hi, is the drill available?")
        conversation = await self.messaging.get_conversation(self.conversation.id, SELLER)
        self.assertEqual(conversation.unread_by_users, [SELLER])
        self.assertEqual(conversation.last_message_text, "Hi, is the drill available?")

        await self.messaging.send_message(self.conversation.id, SELLER, "Yes it is")
        conversation = await self.messaging.get_conversation(self.conversation.id, SELLER)
        self.assertEqual(conversation.unread_by_users, [BUYER])

    async def test_preview_is_truncated(self):
        text = "x" * 250
        entry = await self.messaging.send_message(self.conversation.id, BUYER, text)
        self.assertEqual(entry.text, text)
        conversation = await self.messaging.get_conversation(self.conversation.id, BUYER)
        self.assertEqual(len(conversation.last_message_text), 100)

    async def test_rejections(self):
        with self.assertRaises(ValidationError):
            await self.messaging.send_message(self.conversation.id, BUYER, "  ")
        with self.assertRaises(AuthorizationError):
            await self.messaging.send_message(self.conversation.id, OUTSIDER, "hello")
        with self.assertRaises(NotFoundError):
            await self.messaging.send_message("nobody_here", BUYER, "hello")
        with self.assertRaises(ConflictError):
            await self.messaging.send_message(self.conversation.id, BUYER, "hello", expected_version=7)

    async def test_history_is_ordered(self):
        for i in range(5):
            sender = BUYER if i % 2 == 0 else SELLER
            await self.messaging.send_message(self.conversation.id, sender, f"message {i}")
        await self.messaging.send_message(self.conversation.id, SELLER, "Offer accepted", MessageType.SYSTEM)

        history = await self.messaging.get_conversation_messages(self.conversation.id, BUYER)
        self.assertEqual([m.text for m in history[:5]], [f"message {i}" for i in range(5)])
        self.assertEqual(history[-1].type, MessageType.SYSTEM)
        sequences = [m.sequence for m in history]
        self.assertEqual(sequences, sorted(sequences))

        latest = await self.messaging.get_conversation_messages(self.conversation.id, BUYER, limit=2)
        self.assertEqual([m.text for m in latest], ["message 4", "Offer accepted"])

    async def test_concurrent_sends_are_all_kept(self):
        await asyncio.gather(*[
            self.messaging.send_message(self.conversation.id, BUYER if i % 2 else SELLER, f"m{i}")
            for i in range(4)
        ])
        history = await self.messaging.get_conversation_messages(self.conversation.id, BUYER)
        self.assertEqual(len(history), 4)
        self.assertEqual(len({m.sequence for m in history}), 4)


class ReadAndArchiveTest(DatabaseTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.conversation = await self.messaging.get_or_create_conversation(BUYER, SELLER)
        await self.messaging.send_message(self.conversation.id, BUYER, "Hello")

    async def test_mark_as_read_removes_only_caller(self):
        self.assertEqual(await self.messaging.get_unread_conversation_count(SELLER), 1)
        self.assertEqual(await self.messaging.get_unread_conversation_count(BUYER), 0)

        read = await self.messaging.mark_as_read(self.conversation.id, SELLER)
        self.assertEqual(read.unread_by_users, [])
        version = read.version

        again = await self.messaging.mark_as_read(self.conversation.id, SELLER)
        self.assertEqual(again.version, version)
        # Quien no tenía nada pendiente tampoco escribe
        untouched = await self.messaging.mark_as_read(self.conversation.id, BUYER)
        self.assertEqual(untouched.version, version)
        self.assertEqual(await self.messaging.get_unread_conversation_count(SELLER), 0)

    async def test_archive_is_per_user(self):
        archived = await self.messaging.archive_conversation(self.conversation.id, SELLER)
        self.assertEqual(archived.status_for(SELLER), ConversationStatus.ARCHIVED)
        self.assertEqual(archived.status_for(BUYER), ConversationStatus.ACTIVE)

        self.assertEqual(await self.messaging.list_user_conversations(SELLER), [])
        self.assertEqual(len(await self.messaging.list_user_conversations(SELLER, ConversationStatus.ARCHIVED)), 1)
        self.assertEqual(len(await self.messaging.list_user_conversations(BUYER)), 1)

        # Un mensaje nuevo no cambia la vista archivada del destinatario
        await self.messaging.send_message(self.conversation.id, BUYER, "Still there?")
        self.assertEqual(await self.messaging.list_user_conversations(SELLER), [])

    async def test_outsider_cannot_read_or_archive(self):
        with self.assertRaises(AuthorizationError):
            await self.messaging.mark_as_read(self.conversation.id, OUTSIDER)
        with self.assertRaises(AuthorizationError):
            await self.messaging.archive_conversation(self.conversation.id, OUTSIDER)
        with self.assertRaises(AuthorizationError):
            await self.messaging.get_conversation_messages(self.conversation.id, OUTSIDER)


if __name__ == "__main__":
    unittest.main()
