from __future__ import annotations

import unittest
from datetime import timedelta

from escrow_case import EscrowTestCase
from keymarket.extensions import db
from keymarket.models import Payout, PayoutItem
from keymarket.services.order_store import OrderStatus
from keymarket.services.payout_service import PayoutStatus


class SettlementScenariosTestCase(EscrowTestCase):
    def _assert_single_payout(self, order, amount: int) -> Payout:
        item = PayoutItem.query.filter_by(order_id=order.id).one()
        payout = db.session.get(Payout, item.payout_id)
        self.assertEqual(payout.seller_id, "seller-1")
        self.assertEqual(int(item.amount_minor), amount)
        self.assertEqual(int(payout.amount_minor), amount)
        return payout

    def test_buyer_confirms_before_deadline(self):
        order = self.new_order(total=1000)
        self.assertEqual(order.status, OrderStatus.PAYMENT_PENDING)
        self.assertEqual((order.platform_fee_minor, order.seller_amount_minor), (100, 900))

        result = self.engine.confirm_payment(order.payment_intent_ref)
        self.assertTrue(result.created)
        self.assertEqual(self.engine.get_order(order.id).status, OrderStatus.PAID)

        delivered_at = self.clock()
        order = self.engine.record_delivery(seller_id="seller-1", order_id=order.id, payload="AAAA-BBBB")
        self.assertEqual(order.auto_confirm_deadline, delivered_at + timedelta(hours=72))

        self.clock.advance(hours=1)
        order = self.engine.confirm_receipt(buyer_id="buyer-1", order_id=order.id)
        self.assertEqual(order.status, OrderStatus.COMPLETED)
        self.assertFalse(order.auto_confirmed)
        self.assertIsNone(order.auto_confirm_deadline)

        payout = self._assert_single_payout(order, 900)
        self.assertEqual(payout.status, PayoutStatus.PENDING)
        self.assertIn("order_completed", self.notifications.kinds_for("seller-1"))

        summary = self.engine.run_payout_sweep()
        self.assertEqual(summary["completed"], 1)
        payout = db.session.get(Payout, payout.id)
        self.assertEqual(payout.status, PayoutStatus.COMPLETED)
        self.assertEqual(self.engine.get_order(order.id).payout_id, payout.id)
        transfers = self.gateway.transfers_for(payout.transfer_reference_key)
        self.assertEqual(len(transfers), 1)
        self.assertEqual(transfers[0]["amount_minor"], 900)
        self.assertEqual(transfers[0]["destination_account"], "acct_seller_1")

    def test_sweep_confirms_silent_buyer(self):
        order = self.delivered_order(total=1000)
        self.clock.advance(hours=73)

        summary = self.engine.run_auto_confirm_sweep()
        self.assertEqual(summary["completed"], 1)

        order = self.engine.get_order(order.id)
        self.assertEqual(order.status, OrderStatus.COMPLETED)
        self.assertTrue(order.auto_confirmed)
        self._assert_single_payout(order, 900)
        self.assertIn("order_auto_confirmed", self.notifications.kinds_for("buyer-1"))

    def test_dispute_before_deadline_blocks_sweep_then_redeliver(self):
        order = self.delivered_order(total=1000)
        self.clock.advance(hours=2)
        dispute = self.engine.open_dispute(
            buyer_id="buyer-1",
            order_id=order.id,
            category="defective_code",
            subject="Key already redeemed",
        )
        self.assertEqual(self.engine.get_order(order.id).status, OrderStatus.DISPUTED)

        self.clock.advance(hours=71)
        summary = self.engine.run_auto_confirm_sweep()
        self.assertEqual(summary["completed"], 0)
        self.assertEqual(self.engine.get_order(order.id).status, OrderStatus.DISPUTED)

        dispute = self.engine.seller_respond_to_dispute(
            seller_id="seller-1",
            dispute_id=dispute.id,
            action="redeliver",
            note="Sending a fresh key",
        )
        self.assertEqual(dispute.status, "resolved")
        self.assertEqual(dispute.resolution_action, "redeliver")
        order = self.engine.get_order(order.id)
        self.assertEqual(order.status, OrderStatus.AWAITING_DELIVERY)
        self.assertIsNone(order.dispute_id)
        self.assertIsNone(order.auto_confirm_deadline)

        order = self.engine.record_delivery(seller_id="seller-1", order_id=order.id, payload="DDDD-EEEE")
        self.assertEqual(order.status, OrderStatus.AWAITING_CONFIRMATION)
        self.assertEqual(order.auto_confirm_deadline, self.clock() + timedelta(hours=72))
        self.assertEqual(PayoutItem.query.count(), 0)

    def test_full_refund_never_pays_out(self):
        order = self.delivered_order(total=1000)
        dispute = self.engine.open_dispute(
            buyer_id="buyer-1",
            order_id=order.id,
            category="no_delivery",
            subject="Nothing arrived",
        )
        self.engine.seller_respond_to_dispute(
            seller_id="seller-1",
            dispute_id=dispute.id,
            action="full_refund",
            note="Out of stock",
        )
        order = self.engine.get_order(order.id)
        self.assertEqual(order.status, OrderStatus.REFUNDED)
        self.assertEqual(order.refunded_amount_minor, 1000)
        refunds = list(self.gateway.refunds.values())
        self.assertEqual(len(refunds), 1)
        self.assertEqual(refunds[0]["amount_minor"], 1000)

        self.clock.advance(hours=100)
        self.engine.run_auto_confirm_sweep()
        self.engine.run_payout_sweep()
        self.assertEqual(PayoutItem.query.count(), 0)
        self.assertEqual(Payout.query.count(), 0)
        self.assertIsNone(self.engine.get_order(order.id).payout_id)

    def test_transfer_timeout_is_reconciled_without_second_transfer(self):
        order = self.completed_order(total=1000)
        self.gateway.timeout_after_accept("transfer")

        summary = self.engine.run_payout_sweep()
        self.assertEqual(summary["in_flight"], 1)
        payout = Payout.query.one()
        self.assertEqual(payout.status, PayoutStatus.PROCESSING)
        self.assertEqual(len(self.gateway.transfers_for(payout.transfer_reference_key)), 1)
        self.assertIsNone(self.engine.get_order(order.id).payout_id)

        self.clock.advance(minutes=2)
        result = self.engine.reconcile_payouts()
        self.assertEqual(result["completed"], 1)
        self.assertEqual(result["unresolved"], 0)

        payout = Payout.query.one()
        self.assertEqual(payout.status, PayoutStatus.COMPLETED)
        self.assertEqual(len(self.gateway.transfers_for(payout.transfer_reference_key)), 1)
        self.assertEqual(sum(1 for op, _ in self.gateway.calls if op == "transfer"), 1)
        self.assertEqual(self.engine.get_order(order.id).payout_id, payout.id)


if __name__ == "__main__":
    unittest.main()
