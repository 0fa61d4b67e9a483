import asyncio
import unittest
from datetime import timedelta

from support import BUYER, OUTSIDER, SELLER, TOOL_ID, DatabaseTestCase

from regateo.core.errors import AuthorizationError, ConflictError, NotFoundError, StateError, ValidationError
from regateo.core.utils import utcnow
from regateo.schemas.offer import OfferMessageType, OfferStatus
from regateo.tasks.offers import expire_offers


class CreateOfferTest(DatabaseTestCase):
    async def test_create_offer_snapshot_and_flags(self):
        offer = await self.open_offer(150.0)

        self.assertEqual(offer.status, OfferStatus.PENDING)
        self.assertEqual(offer.current_price, 150.0)
        self.assertEqual(offer.original_price, 200.0)
        self.assertEqual(offer.tool_title, "Cordless drill")
        self.assertEqual(offer.seller_id, SELLER)
        self.assertEqual(offer.last_actor_id, BUYER)
        self.assertTrue(offer.is_active)
        self.assertTrue(offer.has_unread_messages_seller)
        self.assertFalse(offer.has_unread_messages_buyer)
        self.assertEqual(offer.version, 1)
        self.assertAlmostEqual(
            (offer.expires_at - offer.created_at).total_seconds(), timedelta(days=7).total_seconds(), delta=1
        )

        messages = await self.offers.get_offer_messages(offer.id, SELLER)
        self.assertEqual(len(messages), 1)
        self.assertEqual(messages[0].message_type, OfferMessageType.OFFER)
        self.assertEqual(messages[0].price, 150.0)
        self.assertEqual(messages[0].message, "Would you take 150?")
        self.assertEqual(messages[0].recipient_id, SELLER)
        self.assertEqual(messages[0].sequence, 1)

    async def test_create_offer_rejections(self):
        await self.add_listing()
        with self.assertRaises(ValidationError):
            await self.offers.create_offer(BUYER, TOOL_ID, 200.0)
        with self.assertRaises(ValidationError):
            await self.offers.create_offer(BUYER, TOOL_ID, 0)
        with self.assertRaises(ValidationError):
            await self.offers.create_offer(SELLER, TOOL_ID, 150.0)
        with self.assertRaises(NotFoundError):
            await self.offers.create_offer(BUYER, "missing-tool", 150.0)

        self.assertEqual(await self.offers.list_buyer_offers(BUYER), [])

    async def test_unavailable_listing(self):
        await self.add_listing(listing_id="sold-tool", status="sold")
        with self.assertRaises(NotFoundError):
            await self.offers.create_offer(BUYER, "sold-tool", 100.0)


class NegotiationScenarioTest(DatabaseTestCase):
    async def test_counter_then_invalid_second_counter(self):
        offer = await self.open_offer(150.0)

        countered = await self.offers.counter_offer(offer.id, SELLER, 180.0, "Meet me at 180")
        self.assertEqual(countered.status, OfferStatus.COUNTERED)
        self.assertEqual(countered.current_price, 180.0)
        self.assertTrue(countered.has_unread_messages_buyer)
        self.assertFalse(countered.has_unread_messages_seller)
        self.assertEqual(countered.version, 2)

        with self.assertRaises(ValidationError):
            await self.offers.counter_offer(offer.id, SELLER, 160.0)

        # El intento fallido no escribe nada
        current = await self.offers.get_offer(offer.id, BUYER)
        self.assertEqual(current.version, 2)
        self.assertEqual(current.current_price, 180.0)
        self.assertEqual(len(await self.offers.get_offer_messages(offer.id, BUYER)), 2)

    async def test_buyer_accepts_counter_then_offer_is_closed(self):
        offer = await self.open_offer(150.0)
        await self.offers.counter_offer(offer.id, SELLER, 180.0)

        accepted = await self.offers.accept_offer(offer.id, BUYER)
        self.assertEqual(accepted.status, OfferStatus.ACCEPTED)
        self.assertFalse(accepted.is_active)
        self.assertEqual(accepted.current_price, 180.0)
        self.assertTrue(accepted.has_unread_messages_seller)
        self.assertFalse(accepted.has_unread_messages_buyer)

        with self.assertRaises(StateError):
            await self.offers.decline_offer(offer.id, SELLER)
        with self.assertRaises(StateError):
            await self.offers.counter_offer(offer.id, SELLER, 190.0)
        with self.assertRaises(StateError):
            await self.offers.send_offer_message(offer.id, BUYER, "Thanks!")

        messages = await self.offers.get_offer_messages(offer.id, BUYER)
        self.assertEqual(
            [m.message_type for m in messages],
            [OfferMessageType.OFFER, OfferMessageType.COUNTER, OfferMessageType.ACCEPTED],
        )
        self.assertEqual([m.sequence for m in messages], [1, 2, 3])
        self.assertEqual(messages[-1].message, "Offer accepted")

    async def test_seller_declines_with_reason(self):
        offer = await self.open_offer(150.0)

        declined = await self.offers.decline_offer(offer.id, SELLER, "Too low")
        self.assertEqual(declined.status, OfferStatus.DECLINED)
        self.assertFalse(declined.is_active)
        self.assertTrue(declined.has_unread_messages_buyer)

        messages = await self.offers.get_offer_messages(offer.id, BUYER)
        self.assertEqual(messages[-1].message_type, OfferMessageType.DECLINED)
        self.assertEqual(messages[-1].message, "Too low")

    async def test_buyer_cancels_pending_offer(self):
        offer = await self.open_offer(150.0)
        with self.assertRaises(StateError):
            await self.offers.cancel_offer(offer.id, SELLER)

        cancelled = await self.offers.cancel_offer(offer.id, BUYER)
        self.assertEqual(cancelled.status, OfferStatus.CANCELLED)
        messages = await self.offers.get_offer_messages(offer.id, SELLER)
        self.assertEqual(messages[-1].message, "Offer cancelled")

    async def test_price_stays_in_range_through_back_and_forth(self):
        offer = await self.open_offer(120.0)
        moves = [(SELLER, 190.0), (BUYER, 150.0), (SELLER, 175.0), (BUYER, 160.0), (SELLER, 170.0)]
        for actor, price in moves:
            offer = await self.offers.counter_offer(offer.id, actor, price)
            self.assertTrue(0 < offer.current_price <= offer.original_price)
            self.assertEqual(offer.last_actor_id, actor)

        with self.assertRaises(StateError):
            await self.offers.accept_offer(offer.id, SELLER)
        accepted = await self.offers.accept_offer(offer.id, BUYER)
        self.assertEqual(accepted.current_price, 170.0)
        self.assertEqual(len(await self.offers.get_offer_messages(offer.id, BUYER)), len(moves) + 2)


class AccessAndConcurrencyTest(DatabaseTestCase):
    async def test_outsider_cannot_read_or_act(self):
        offer = await self.open_offer()
        with self.assertRaises(AuthorizationError):
            await self.offers.get_offer(offer.id, OUTSIDER)
        with self.assertRaises(AuthorizationError):
            await self.offers.accept_offer(offer.id, OUTSIDER)
        with self.assertRaises(AuthorizationError):
            await self.offers.get_offer_messages(offer.id, OUTSIDER)
        with self.assertRaises(NotFoundError):
            await self.offers.accept_offer("missing", SELLER)

    async def test_expected_version_mismatch(self):
        offer = await self.open_offer()
        await self.offers.send_offer_message(offer.id, SELLER, "Is 150 firm?")

        with self.assertRaises(ConflictError) as ctx:
            await self.offers.accept_offer(offer.id, SELLER, expected_version=1)
        self.assertEqual(ctx.exception.current_version, 2)

        accepted = await self.offers.accept_offer(offer.id, SELLER, expected_version=2)
        self.assertEqual(accepted.version, 3)

    async def test_concurrent_accept_and_decline_leave_one_winner(self):
        offer = await self.open_offer()
        results = await asyncio.gather(
            self.offers.accept_offer(offer.id, SELLER, expected_version=1),
            self.offers.decline_offer(offer.id, SELLER, expected_version=1),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        self.assertEqual(len(winners), 1)
        self.assertEqual(len(losers), 1)
        self.assertIsInstance(losers[0], (ConflictError, StateError))

        messages = await self.offers.get_offer_messages(offer.id, SELLER)
        self.assertEqual(len(messages), 2)

    async def test_role_scoped_lists(self):
        offer = await self.open_offer()
        await self.add_listing(listing_id="tool-2", price=80.0, title="Ladder")
        await self.offers.create_offer(BUYER, "tool-2", 60.0)

        self.assertEqual(len(await self.offers.list_buyer_offers(BUYER)), 2)
        self.assertEqual(len(await self.offers.list_seller_offers(SELLER)), 2)
        self.assertEqual(await self.offers.list_seller_offers(BUYER), [])

        await self.offers.decline_offer(offer.id, SELLER)
        active = await self.offers.list_seller_offers(SELLER, active=True)
        self.assertEqual([o.tool_id for o in active], ["tool-2"])
        declined = await self.offers.list_buyer_offers(BUYER, status=OfferStatus.DECLINED)
        self.assertEqual([o.id for o in declined], [offer.id])

        self.assertEqual(len(await self.offers.list_tool_offers(TOOL_ID, SELLER)), 1)
        with self.assertRaises(AuthorizationError):
            await self.offers.list_tool_offers(TOOL_ID, BUYER)


class ReadMarkingTest(DatabaseTestCase):
    async def test_mark_as_read_is_idempotent(self):
        offer = await self.open_offer()

        read = await self.offers.mark_offer_as_read(offer.id, SELLER)
        self.assertFalse(read.has_unread_messages_seller)
        self.assertEqual(read.version, 2)

        again = await self.offers.mark_offer_as_read(offer.id, SELLER)
        self.assertEqual(again.version, 2)

        messages = await self.offers.get_offer_messages(offer.id, SELLER)
        self.assertTrue(all(m.is_read for m in messages if m.recipient_id == SELLER))

    async def test_mark_as_read_on_closed_offer(self):
        offer = await self.open_offer()
        await self.offers.decline_offer(offer.id, SELLER, "Too low")

        read = await self.offers.mark_offer_as_read(offer.id, BUYER)
        self.assertFalse(read.has_unread_messages_buyer)
        self.assertEqual(read.status, OfferStatus.DECLINED)

    async def test_message_flips_unread_flags(self):
        offer = await self.open_offer()
        await self.offers.mark_offer_as_read(offer.id, SELLER)

        entry = await self.offers.send_offer_message(offer.id, BUYER, "Can you ship it?")
        self.assertEqual(entry.recipient_id, SELLER)
        current = await self.offers.get_offer(offer.id, SELLER)
        self.assertTrue(current.has_unread_messages_seller)
        self.assertFalse(current.has_unread_messages_buyer)
        self.assertEqual(current.status, OfferStatus.PENDING)
        self.assertEqual(entry.sequence, current.version)


class ExpirationSweepTest(DatabaseTestCase):
    async def test_sweep_expires_only_open_offers_past_deadline(self):
        offer = await self.open_offer()
        await self.add_listing(listing_id="tool-2", price=80.0)
        closed = await self.offers.create_offer(BUYER, "tool-2", 60.0)
        await self.offers.decline_offer(closed.id, SELLER)

        self.assertEqual(await expire_offers(self.offers), 0)

        later = utcnow() + timedelta(days=8)
        self.assertEqual(await expire_offers(self.offers, now=later), 1)

        expired = await self.offers.get_offer(offer.id, BUYER)
        self.assertEqual(expired.status, OfferStatus.EXPIRED)
        self.assertFalse(expired.is_active)
        self.assertTrue(expired.has_unread_messages_buyer)
        self.assertTrue(expired.has_unread_messages_seller)
        messages = await self.offers.get_offer_messages(offer.id, BUYER)
        self.assertEqual(messages[-1].message, "Offer expired")


if __name__ == "__main__":
    unittest.main()
