import unittest
from datetime import timedelta

from regateo.core.errors import AuthorizationError, ConflictError, StateError, ValidationError
from regateo.core.utils import utcnow
from regateo.schemas.offer import OfferMessageType, OfferResponse, OfferStatus
from regateo.services import offer_machine

BUYER = "buyer-1"
SELLER = "seller-1"


def make_offer(**overrides):
    now = utcnow()
    data = {
        "id": "offer-1",
        "tool_id": "tool-1",
        "tool_title": "Cordless drill",
        "currency": "USD",
        "buyer_id": BUYER,
        "seller_id": SELLER,
        "original_price": 200.0,
        "current_price": 150.0,
        "status": OfferStatus.PENDING,
        "is_active": True,
        "has_unread_messages_buyer": False,
        "has_unread_messages_seller": True,
        "last_actor_id": BUYER,
        "created_at": now,
        "updated_at": now,
        "expires_at": now + timedelta(days=7),
        "version": 1,
    }
    data.update(overrides)
    return OfferResponse(**data)


class NewOfferValidationTest(unittest.TestCase):
    def test_accepts_price_below_listing(self):
        self.assertEqual(offer_machine.validate_new_offer(150, 200.0, BUYER, SELLER), 150.0)

    def test_rejects_out_of_range_prices(self):
        for price in (0, -5, 200, 250):
            with self.subTest(price=price):
                with self.assertRaises(ValidationError):
                    offer_machine.validate_new_offer(price, 200.0, BUYER, SELLER)

    def test_rejects_non_numeric_price(self):
        for price in ("150", None, float("nan"), True):
            with self.subTest(price=price):
                with self.assertRaises(ValidationError):
                    offer_machine.validate_new_offer(price, 200.0, BUYER, SELLER)

    def test_seller_cannot_offer_on_own_listing(self):
        with self.assertRaises(ValidationError):
            offer_machine.validate_new_offer(150, 200.0, SELLER, SELLER)

    def test_minimum_ratio_when_configured(self):
        with self.assertRaises(ValidationError):
            offer_machine.validate_new_offer(90, 200.0, BUYER, SELLER, min_price_ratio=0.5)
        self.assertEqual(offer_machine.validate_new_offer(100, 200.0, BUYER, SELLER, min_price_ratio=0.5), 100.0)


class AcceptTest(unittest.TestCase):
    def test_seller_accepts_pending(self):
        transition = offer_machine.plan_accept(make_offer(), SELLER)
        self.assertEqual(transition.status, OfferStatus.ACCEPTED)
        self.assertEqual(transition.message_type, OfferMessageType.ACCEPTED)
        self.assertEqual(transition.text, "Offer accepted")
        self.assertIsNone(transition.current_price)

    def test_buyer_cannot_accept_own_pending_offer(self):
        with self.assertRaises(StateError):
            offer_machine.plan_accept(make_offer(), BUYER)

    def test_buyer_accepts_seller_counter(self):
        offer = make_offer(status=OfferStatus.COUNTERED, current_price=180.0, last_actor_id=SELLER)
        self.assertEqual(offer_machine.plan_accept(offer, BUYER).status, OfferStatus.ACCEPTED)
        with self.assertRaises(StateError):
            offer_machine.plan_accept(offer, SELLER)

    def test_seller_accepts_buyer_counter(self):
        offer = make_offer(status=OfferStatus.COUNTERED, current_price=170.0, last_actor_id=BUYER)
        self.assertEqual(offer_machine.plan_accept(offer, SELLER).status, OfferStatus.ACCEPTED)

    def test_outsider_is_rejected_before_anything_else(self):
        offer = make_offer(status=OfferStatus.DECLINED, is_active=False)
        with self.assertRaises(AuthorizationError):
            offer_machine.plan_accept(offer, "someone-else", expected_version=99)


class CounterTest(unittest.TestCase):
    def test_seller_counter_bounds(self):
        offer = make_offer()
        transition = offer_machine.plan_counter(offer, SELLER, 180, "Meet me at 180")
        self.assertEqual(transition.status, OfferStatus.COUNTERED)
        self.assertEqual(transition.current_price, 180.0)
        self.assertTrue(transition.moves_price)

        # El original está permitido; por encima o por debajo del actual no
        self.assertEqual(offer_machine.plan_counter(offer, SELLER, 200).current_price, 200.0)
        for price in (150, 140, 201):
            with self.subTest(price=price):
                with self.assertRaises(ValidationError):
                    offer_machine.plan_counter(offer, SELLER, price)

    def test_buyer_counter_bounds(self):
        offer = make_offer(status=OfferStatus.COUNTERED, current_price=180.0, last_actor_id=SELLER)
        self.assertEqual(offer_machine.plan_counter(offer, BUYER, 165).current_price, 165.0)
        for price in (180, 190, 0, -1):
            with self.subTest(price=price):
                with self.assertRaises(ValidationError):
                    offer_machine.plan_counter(offer, BUYER, price)

    def test_counter_on_terminal_offer(self):
        offer = make_offer(status=OfferStatus.ACCEPTED, is_active=False)
        with self.assertRaises(StateError):
            offer_machine.plan_counter(offer, SELLER, 180)

    def test_expected_version_checked_before_state(self):
        offer = make_offer(status=OfferStatus.ACCEPTED, is_active=False, version=3)
        with self.assertRaises(ConflictError) as ctx:
            offer_machine.plan_counter(offer, SELLER, 180, expected_version=2)
        self.assertEqual(ctx.exception.current_version, 3)


class DeclineCancelTest(unittest.TestCase):
    def test_decline_uses_reason(self):
        transition = offer_machine.plan_decline(make_offer(), SELLER, "Too low")
        self.assertEqual(transition.status, OfferStatus.DECLINED)
        self.assertEqual(transition.text, "Too low")
        self.assertEqual(offer_machine.plan_decline(make_offer(), BUYER).text, "Offer declined")

    def test_cancel_only_by_last_mover(self):
        transition = offer_machine.plan_cancel(make_offer(), BUYER)
        self.assertEqual(transition.status, OfferStatus.CANCELLED)
        self.assertEqual(transition.message_type, OfferMessageType.DECLINED)
        self.assertEqual(transition.text, "Offer cancelled")
        with self.assertRaises(StateError):
            offer_machine.plan_cancel(make_offer(), SELLER)

    def test_terminal_offers_reject_every_operation(self):
        for status in (OfferStatus.ACCEPTED, OfferStatus.DECLINED, OfferStatus.CANCELLED, OfferStatus.EXPIRED):
            offer = make_offer(status=status, is_active=False)
            with self.subTest(status=status):
                with self.assertRaises(StateError):
                    offer_machine.plan_accept(offer, SELLER)
                with self.assertRaises(StateError):
                    offer_machine.plan_decline(offer, SELLER)
                with self.assertRaises(StateError):
                    offer_machine.plan_cancel(offer, BUYER)
                with self.assertRaises(StateError):
                    offer_machine.plan_message(offer, BUYER, "hello?")


class MessageAndExpireTest(unittest.TestCase):
    def test_message_keeps_status(self):
        transition = offer_machine.plan_message(make_offer(), SELLER, "Is it still available?")
        self.assertIsNone(transition.status)
        self.assertEqual(transition.message_type, OfferMessageType.MESSAGE)

    def test_blank_message(self):
        with self.assertRaises(ValidationError):
            offer_machine.plan_message(make_offer(), SELLER, "   ")

    def test_expire_only_after_deadline(self):
        offer = make_offer()
        with self.assertRaises(StateError):
            offer_machine.plan_expire(offer)
        transition = offer_machine.plan_expire(offer, now=utcnow() + timedelta(days=8))
        self.assertEqual(transition.status, OfferStatus.EXPIRED)
        self.assertEqual(transition.actor_id, offer_machine.SYSTEM_ACTOR)

    def test_available_actions(self):
        offer = make_offer()
        self.assertEqual(offer_machine.available_actions(offer, SELLER), ["accept", "counter", "decline", "message"])
        self.assertEqual(offer_machine.available_actions(offer, BUYER), ["counter", "decline", "message", "cancel"])
        self.assertEqual(offer_machine.available_actions(offer, "someone-else"), [])
        self.assertEqual(offer_machine.available_actions(make_offer(status=OfferStatus.DECLINED, is_active=False), SELLER), [])


if __name__ == "__main__":
    unittest.main()
