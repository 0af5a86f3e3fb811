from __future__ import annotations

import unittest

from escrow_case import EscrowTestCase
from keymarket.errors import ExternalDependencyError, GatewayTimeout, StateConflict
from keymarket.extensions import db
from keymarket.models import Payout, PayoutAttempt, ReviewQueueItem
from keymarket.services.payout_service import PayoutStatus


class PayoutSettlementTestCase(EscrowTestCase):
    def test_orders_of_one_shop_are_batched(self):
        first = self.completed_order(total=1000)
        second = self.completed_order(total=2000)
        payout = Payout.query.one()
        self.assertEqual(payout.amount_minor, 900 + 1800)
        self.assertEqual(sorted(payout.order_ids()), sorted([first.id, second.id]))

        summary = self.engine.run_payout_sweep()
        self.assertEqual(summary["completed"], 1)
        payout = db.session.get(Payout, payout.id)
        for order_id in (first.id, second.id):
            self.assertEqual(self.engine.get_order(order_id).payout_id, payout.id)
        self.assertEqual(list(self.gateway.transfers.values())[0]["amount_minor"], 2700)

    def test_enqueue_is_idempotent_per_order(self):
        order = self.completed_order()
        payout = self.engine.payouts.enqueue_for_payout(order.id)
        again = self.engine.payouts.enqueue_for_payout(order.id)
        self.assertEqual(payout.id, again.id)
        self.assertEqual(db.session.get(Payout, payout.id).amount_minor, 900)

    def test_only_completed_orders_are_enqueued(self):
        order = self.delivered_order()
        self.assertIsNone(self.engine.payouts.enqueue_for_payout(order.id))
        self.assertEqual(Payout.query.count(), 0)

    def test_second_sweep_pays_nothing_twice(self):
        order = self.completed_order()
        self.engine.run_payout_sweep()
        summary = self.engine.run_payout_sweep()
        self.assertEqual(summary["processed"], 0)
        self.assertEqual(len(self.gateway.transfers), 1)
        payout_id = self.engine.get_order(order.id).payout_id
        self.assertIsNotNone(payout_id)
        self.assertEqual(self.engine.payouts.enqueue_for_payout(order.id).id, payout_id)

    def test_order_completed_while_payout_in_flight_gets_a_new_payout(self):
        self.completed_order()
        self.gateway.timeout_after_accept("transfer")
        self.engine.run_payout_sweep()
        in_flight = Payout.query.one()
        self.assertEqual(in_flight.status, PayoutStatus.PROCESSING)

        late = self.completed_order(total=500)
        payouts = Payout.query.order_by(Payout.id.asc()).all()
        self.assertEqual(len(payouts), 2)
        self.assertEqual(payouts[1].order_ids(), [late.id])
        self.assertEqual(payouts[1].status, PayoutStatus.PENDING)

    def test_lost_response_only_simulated_for_money_movements(self):
        for op in ("create_intent", "confirm_intent", "find_transfer"):
            with self.assertRaises(ValueError):
                self.gateway.timeout_after_accept(op)
        self.gateway.timeout_after_accept("refund")
        with self.assertRaises(GatewayTimeout):
            self.gateway.refund(intent_ref="pi_x", amount_minor=250, idempotency_key="refund-key-1")
        replay = self.gateway.refund(intent_ref="pi_x", amount_minor=250, idempotency_key="refund-key-1")
        self.assertEqual(replay.amount_minor, 250)
        self.assertEqual(len(self.gateway.refunds), 1)

    def test_permanent_failure_goes_to_manual_transfer(self):
        order = self.completed_order()
        self.gateway.fail_next(
            "transfer",
            ExternalDependencyError("destination account closed", transient=False, dependency="payments"),
        )
        summary = self.engine.run_payout_sweep()
        self.assertEqual(summary["manual"], 1)

        payout = Payout.query.one()
        self.assertEqual(payout.status, PayoutStatus.PENDING_MANUAL_TRANSFER)
        self.assertIn("account closed", payout.last_error)
        item = ReviewQueueItem.query.one()
        self.assertEqual(item.kind, "pending_manual_transfer")
        self.assertEqual(item.subject_id, str(payout.id))
        self.assertIsNone(self.engine.get_order(order.id).payout_id)

        with self.assertRaises(StateConflict):
            self.engine.payouts.process_payout(payout.id)

    def test_missing_destination_goes_to_manual_transfer(self):
        self.catalog.add_shop("shop-3", owner_id="seller-3")
        self.completed_order(shop_id="shop-3")
        self.engine.run_payout_sweep()
        self.assertEqual(Payout.query.one().status, PayoutStatus.PENDING_MANUAL_TRANSFER)
        self.assertEqual(self.gateway.transfers, {})

    def test_transient_failures_exhaust_then_manual_retry_completes(self):
        self.completed_order()
        for _ in range(3):
            self.gateway.fail_next("transfer", ExternalDependencyError("gateway 503", transient=True))
        self.engine.run_payout_sweep()
        payout = Payout.query.one()
        self.assertEqual(payout.status, PayoutStatus.FAILED)
        self.assertEqual(payout.attempt_count, 1)
        self.assertIn("payout_failed", self.notifications.kinds_for("seller-1"))

        summary = self.engine.run_payout_sweep()
        self.assertEqual(summary["processed"], 0)

        payout = self.engine.payouts.process_payout(payout.id, actor_id="admin-1")
        self.assertEqual(payout.status, PayoutStatus.COMPLETED)
        attempts = PayoutAttempt.query.filter_by(payout_id=payout.id).order_by(PayoutAttempt.attempt_no).all()
        self.assertEqual([a.status for a in attempts], ["failed", "succeeded"])
        self.assertEqual(
            [a.idempotency_key for a in attempts],
            [f"payout:{payout.id}:attempt:1", f"payout:{payout.id}:attempt:2"],
        )
        self.assertIn("find_transfer", [op for op, _ in self.gateway.calls])

    def test_reconcile_marks_failed_when_gateway_has_no_transfer(self):
        self.completed_order()
        self.gateway.fail_next("transfer", ExternalDependencyError("socket closed", transient=True))
        self.gateway.fail_next("transfer", ExternalDependencyError("socket closed", transient=True))
        self.gateway.fail_next("transfer", ExternalDependencyError("socket closed", transient=True))
        self.engine.run_payout_sweep()
        payout = Payout.query.one()
        # Simulate a worker that died after claiming the payout.
        payout.status = PayoutStatus.PROCESSING
        db.session.commit()

        self.clock.advance(minutes=5)
        result = self.engine.reconcile_payouts()
        self.assertEqual(result["failed"], 1)
        self.assertEqual(db.session.get(Payout, payout.id).status, PayoutStatus.FAILED)

    def test_reconcile_ignores_fresh_processing_payouts(self):
        self.completed_order()
        self.gateway.timeout_after_accept("transfer")
        self.engine.run_payout_sweep()
        result = self.engine.reconcile_payouts()
        self.assertEqual(result["checked"], 0)
        self.assertEqual(Payout.query.one().status, PayoutStatus.PROCESSING)

    def test_seller_balance_and_payout_history(self):
        self.completed_order(total=1000)
        self.delivered_order(total=2000)
        balance = self.engine.payouts.seller_balance("seller-1")
        self.assertEqual(balance["available_minor"], 900)
        self.assertEqual(balance["pending_minor"], 1800)
        self.assertEqual(balance["paid_out_minor"], 0)

        self.engine.run_payout_sweep()
        balance = self.engine.payouts.seller_balance("seller-1")
        self.assertEqual(balance["available_minor"], 0)
        self.assertEqual(balance["paid_out_minor"], 900)
        history = self.engine.get_seller_payouts("seller-1")
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].to_dict(include_attempts=True)["attempts"][0]["status"], "succeeded")
        self.assertEqual(self.engine.get_seller_payouts("seller-2"), [])


if __name__ == "__main__":
    unittest.main()
