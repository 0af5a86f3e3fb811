from __future__ import annotations

import unittest

from escrow_case import EscrowTestCase
from keymarket.errors import (
    ExternalDependencyError,
    Forbidden,
    InvariantViolation,
    NotFound,
    StateConflict,
    ValidationError,
)
from keymarket.models import Order, OrderTransition, ReviewQueueItem
from keymarket.services.order_store import OrderStatus


def _items(total: int = 1000):
    return [{"product_ref": "game-key-std", "quantity": 1, "unit_price_minor": total}]


class CheckoutTestCase(EscrowTestCase):
    def test_order_snapshot_and_intent(self):
        result = self.engine.create_order(
            buyer_id="buyer-1",
            shop_id="shop-1",
            items=[
                {"product_ref": "dlc-a", "quantity": 2, "unit_price_minor": 250},
                {"product_ref": "dlc-b", "quantity": 1, "unit_price_minor": 501},
            ],
            checkout_session_key="cs_snapshot",
        )
        self.assertTrue(result.created)
        order = self.engine.get_order(result.order.id)
        self.assertEqual(order.seller_id, "seller-1")
        self.assertEqual(order.total_amount_minor, 1001)
        self.assertEqual((order.platform_fee_minor, order.seller_amount_minor), (100, 901))
        self.assertEqual(len(order.items), 2)
        self.assertEqual(order.payment_intent_ref, result.intent.intent_ref)
        intent = self.gateway.intents[order.payment_intent_ref]
        self.assertEqual(intent["amount_minor"], 1001)
        self.assertEqual(intent["metadata"]["checkout_session_key"], "cs_snapshot")

    def test_same_checkout_session_returns_existing_order(self):
        first = self.engine.create_order(
            buyer_id="buyer-1", shop_id="shop-1", items=_items(), checkout_session_key="cs_retry"
        )
        second = self.engine.create_order(
            buyer_id="buyer-1", shop_id="shop-1", items=_items(), checkout_session_key="cs_retry"
        )
        self.assertFalse(second.created)
        self.assertEqual(first.order.id, second.order.id)
        self.assertEqual(Order.query.count(), 1)
        self.assertEqual(len(self.gateway.intents), 1)

    def test_checkout_session_of_another_buyer_is_forbidden(self):
        self.engine.create_order(buyer_id="buyer-1", shop_id="shop-1", items=_items(), checkout_session_key="cs_x")
        with self.assertRaises(Forbidden):
            self.engine.create_order(buyer_id="buyer-2", shop_id="shop-1", items=_items(), checkout_session_key="cs_x")

    def test_rejects_bad_input(self):
        with self.assertRaises(NotFound):
            self.engine.create_order(buyer_id="buyer-1", shop_id="nope", items=_items(), checkout_session_key="cs_1")
        with self.assertRaises(ValidationError):
            self.engine.create_order(buyer_id="seller-1", shop_id="shop-1", items=_items(), checkout_session_key="cs_2")
        with self.assertRaises(ValidationError):
            self.engine.create_order(buyer_id="buyer-1", shop_id="shop-1", items=[], checkout_session_key="cs_3")
        with self.assertRaises(ValidationError):
            self.engine.create_order(buyer_id="buyer-1", shop_id="shop-1", items=_items(0), checkout_session_key="cs_4")
        with self.assertRaises(ValidationError):
            self.engine.create_order(buyer_id="buyer-1", shop_id="shop-1", items=_items(), checkout_session_key="")
        self.assertEqual(Order.query.count(), 0)

    def test_intent_is_retried_on_resume_after_gateway_failure(self):
        self.gateway.fail_next("create_intent", ExternalDependencyError("gateway down", transient=False))
        with self.assertRaises(ExternalDependencyError):
            self.engine.create_order(buyer_id="buyer-1", shop_id="shop-1", items=_items(), checkout_session_key="cs_r")
        order = Order.query.one()
        self.assertIsNone(order.payment_intent_ref)

        resumed = self.engine.create_order(buyer_id="buyer-1", shop_id="shop-1", items=_items(), checkout_session_key="cs_r")
        self.assertFalse(resumed.created)
        self.assertIsNotNone(self.engine.get_order(order.id).payment_intent_ref)


class PaymentReconcilerTestCase(EscrowTestCase):
    auto_settle = False

    def test_confirm_payment_twice_yields_one_paid_order(self):
        order = self.new_order()
        self.gateway.settle_intent(order.payment_intent_ref)

        first = self.engine.confirm_payment(order.payment_intent_ref)
        second = self.engine.confirm_payment(order.payment_intent_ref)
        self.assertTrue(first.created)
        self.assertFalse(second.created)
        self.assertEqual(first.order_id, second.order_id)

        order = self.engine.get_order(order.id)
        self.assertEqual(order.status, OrderStatus.PAID)
        self.assertEqual(order.external_payment_reference, order.payment_intent_ref)
        self.assertEqual(Order.query.filter_by(status=OrderStatus.PAID).count(), 1)
        self.assertEqual(OrderTransition.query.filter_by(order_id=order.id, to_status=OrderStatus.PAID).count(), 1)
        self.assertEqual(sum(1 for op, _ in self.gateway.calls if op == "confirm_intent"), 1)

    def test_unsettled_intent_is_a_state_conflict(self):
        order = self.new_order()
        with self.assertRaises(StateConflict):
            self.engine.confirm_payment(order.payment_intent_ref)
        self.assertEqual(self.engine.get_order(order.id).status, OrderStatus.PAYMENT_PENDING)

    def test_failed_intent_marks_order_failed(self):
        order = self.new_order()
        self.gateway.settle_intent(order.payment_intent_ref, status="failed")
        result = self.engine.confirm_payment(order.payment_intent_ref)
        self.assertEqual(result.status, OrderStatus.PAYMENT_FAILED)
        self.assertEqual(self.engine.get_order(order.id).status, OrderStatus.PAYMENT_FAILED)
        self.assertIn("order_payment_failed", self.notifications.kinds_for("buyer-1"))

    def test_amount_mismatch_goes_to_review_queue(self):
        order = self.new_order(total=1000)
        self.gateway.settle_intent(order.payment_intent_ref, amount_minor=900)
        with self.assertRaises(InvariantViolation) as ctx:
            self.engine.confirm_payment(order.payment_intent_ref)

        item = ReviewQueueItem.query.one()
        self.assertEqual(item.kind, "amount_mismatch")
        self.assertEqual(ctx.exception.review_item_id, item.id)
        self.assertEqual(item.details()["confirmed_amount_minor"], 900)
        self.assertEqual(self.engine.get_order(order.id).status, OrderStatus.PAYMENT_PENDING)
        self.assertIn("review_item_opened", self.notifications.kinds_for("admin-1"))

        with self.assertRaises(InvariantViolation):
            self.engine.confirm_payment(order.payment_intent_ref)
        self.assertEqual(ReviewQueueItem.query.count(), 1)

    def test_buyer_mismatch_goes_to_review_queue(self):
        order = self.new_order()
        with self.assertRaises(InvariantViolation):
            self.engine.reconciler.reconcile(
                order.payment_intent_ref,
                1000,
                "buyer-9",
                checkout_session_key=order.checkout_session_key,
            )
        self.assertEqual(ReviewQueueItem.query.one().kind, "buyer_mismatch")

    def test_unknown_reference_is_an_orphan(self):
        with self.assertRaises(InvariantViolation):
            self.engine.reconciler.reconcile("pi_unknown", 1000, "buyer-1")
        self.assertEqual(ReviewQueueItem.query.one().kind, "orphan_payment")

    def test_second_reference_for_paid_order_is_a_duplicate(self):
        order = self.new_order()
        self.gateway.settle_intent(order.payment_intent_ref)
        self.engine.confirm_payment(order.payment_intent_ref)
        with self.assertRaises(InvariantViolation):
            self.engine.reconciler.reconcile(
                "pi_other_charge",
                1000,
                "buyer-1",
                checkout_session_key=order.checkout_session_key,
            )
        self.assertEqual(ReviewQueueItem.query.one().kind, "duplicate_payment")
        self.assertEqual(self.engine.get_order(order.id).external_payment_reference, order.payment_intent_ref)

    def test_sync_payment_status_recovers_lost_confirmation(self):
        order = self.new_order()
        self.gateway.settle_intent(order.payment_intent_ref)
        result = self.engine.reconciler.sync_payment_status(order.id)
        self.assertTrue(result.created)
        self.assertEqual(self.engine.get_order(order.id).status, OrderStatus.PAID)


if __name__ == "__main__":
    unittest.main()
