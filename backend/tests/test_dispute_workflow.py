from __future__ import annotations

import unittest

from escrow_case import EscrowTestCase
from keymarket.errors import (
    ExternalDependencyError,
    Forbidden,
    GatewayTimeout,
    InvariantViolation,
    StateConflict,
    ValidationError,
)
from keymarket.models import Payout, PayoutItem, ReviewQueueItem
from keymarket.services.order_store import OrderStatus


class DisputeWorkflowTestCase(EscrowTestCase):
    def _open(self, order, **kwargs):
        params = dict(
            buyer_id=order.buyer_id,
            order_id=order.id,
            category="defective_code",
            subject="Key does not work",
            description="Launcher says already used",
            evidence=["att_1", "att_2"],
        )
        params.update(kwargs)
        return self.engine.open_dispute(**params)

    def test_open_links_dispute_and_clears_deadline(self):
        order = self.delivered_order()
        dispute = self._open(order)
        order = self.engine.get_order(order.id)
        self.assertEqual(order.status, OrderStatus.DISPUTED)
        self.assertEqual(order.dispute_id, dispute.id)
        self.assertIsNone(order.auto_confirm_deadline)
        self.assertEqual(dispute.evidence(), ["att_1", "att_2"])
        self.assertEqual(dispute.open_order_id, order.id)
        self.assertIn("dispute_opened", self.notifications.kinds_for("seller-1"))
        self.assertIn("dispute_opened", self.notifications.kinds_for("admin-1"))

    def test_open_guards(self):
        paid = self.paid_order()
        with self.assertRaises(StateConflict):
            self._open(paid)
        delivered = self.delivered_order()
        with self.assertRaises(Forbidden):
            self._open(delivered, buyer_id="buyer-2")
        with self.assertRaises(ValidationError):
            self._open(delivered, category="changed_my_mind")
        with self.assertRaises(ValidationError):
            self._open(delivered, evidence=[f"att_{i}" for i in range(11)])
        self._open(delivered)
        with self.assertRaises(StateConflict):
            self._open(delivered)

    def test_new_dispute_allowed_after_redelivery(self):
        order = self.delivered_order()
        dispute = self._open(order)
        self.engine.seller_respond_to_dispute(
            seller_id="seller-1",
            dispute_id=dispute.id,
            action="redeliver",
            note="New key attached",
            new_delivery_payload={"code": "ZZZZ-YYYY"},
        )
        order = self.engine.get_order(order.id)
        self.assertEqual(order.status, OrderStatus.AWAITING_CONFIRMATION)
        self.assertEqual(order.delivery_dict()["code"], "ZZZZ-YYYY")
        self.assertIsNotNone(order.auto_confirm_deadline)

        second = self._open(order, category="wrong_item", subject="Still wrong")
        self.assertNotEqual(second.id, dispute.id)
        self.assertEqual(self.engine.get_order(order.id).dispute_id, second.id)

    def test_only_shop_owner_responds(self):
        order = self.delivered_order()
        dispute = self._open(order)
        with self.assertRaises(Forbidden):
            self.engine.seller_respond_to_dispute(seller_id="seller-2", dispute_id=dispute.id, action="reject")

    def test_seller_reject_escalates_and_admin_decides(self):
        order = self.delivered_order()
        dispute = self._open(order)
        dispute = self.engine.seller_respond_to_dispute(
            seller_id="seller-1",
            dispute_id=dispute.id,
            action="reject",
            note="Key was valid when sent",
        )
        self.assertEqual(dispute.status, "escalated")
        self.assertEqual(self.engine.get_order(order.id).status, OrderStatus.DISPUTED)
        self.assertEqual([d.id for d in self.engine.disputes.list_escalated()], [dispute.id])

        with self.assertRaises(StateConflict):
            self.engine.seller_respond_to_dispute(seller_id="seller-1", dispute_id=dispute.id, action="full_refund")
        with self.assertRaises(ValidationError):
            self.engine.admin_resolve_dispute(admin_id="admin-1", dispute_id=dispute.id, action="reject", note=" ")

        dispute = self.engine.admin_resolve_dispute(
            admin_id="admin-1",
            dispute_id=dispute.id,
            action="reject",
            note="Redemption logs show the key was used by the buyer",
        )
        self.assertEqual(dispute.status, "resolved")
        self.assertEqual(dispute.resolved_by, "admin:admin-1")
        self.assertIsNone(dispute.open_order_id)
        order = self.engine.get_order(order.id)
        self.assertEqual(order.status, OrderStatus.COMPLETED)
        self.assertEqual(PayoutItem.query.filter_by(order_id=order.id).one().amount_minor, 900)

    def test_admin_cannot_preempt_seller(self):
        order = self.delivered_order()
        dispute = self._open(order)
        with self.assertRaises(StateConflict):
            self.engine.admin_resolve_dispute(admin_id="admin-1", dispute_id=dispute.id, action="reject", note="n")

    def test_partial_refund_resplits_proportionally(self):
        order = self.delivered_order(total=1000)
        dispute = self._open(order)
        self.engine.seller_respond_to_dispute(
            seller_id="seller-1",
            dispute_id=dispute.id,
            action="partial_refund",
            note="Refunding the missing DLC",
            refund_amount_minor=300,
        )
        order = self.engine.get_order(order.id)
        self.assertEqual(order.status, OrderStatus.COMPLETED)
        self.assertEqual(order.total_amount_minor, 700)
        self.assertEqual(order.platform_fee_minor, 70)
        self.assertEqual(order.seller_amount_minor, 630)
        self.assertEqual(order.refunded_amount_minor, 300)
        self.assertEqual(order.platform_fee_minor + order.seller_amount_minor, order.total_amount_minor)
        self.assertEqual([r["amount_minor"] for r in self.gateway.refunds.values()], [300])
        self.assertEqual(Payout.query.one().amount_minor, 630)

    def test_partial_refund_bounds(self):
        order = self.delivered_order(total=1000)
        dispute = self._open(order)
        for amount in (None, 0, 1000, 1200):
            with self.assertRaises(ValidationError):
                self.engine.seller_respond_to_dispute(
                    seller_id="seller-1",
                    dispute_id=dispute.id,
                    action="partial_refund",
                    refund_amount_minor=amount,
                )
        self.assertEqual(self.engine.get_order(order.id).status, OrderStatus.DISPUTED)
        self.assertEqual(self.gateway.refunds, {})

    def test_failed_refund_is_flagged_and_resumable(self):
        order = self.delivered_order(total=1000)
        dispute = self._open(order)
        self.gateway.fail_next(
            "refund",
            ExternalDependencyError("charge already disputed at card network", transient=False, dependency="payments"),
        )
        with self.assertRaises(ExternalDependencyError):
            self.engine.seller_respond_to_dispute(
                seller_id="seller-1",
                dispute_id=dispute.id,
                action="full_refund",
                note="Refund",
            )
        order = self.engine.get_order(order.id)
        self.assertEqual(order.status, OrderStatus.DISPUTE_RESOLVED)
        dispute = self.engine.disputes.get(dispute.id)
        self.assertEqual(dispute.status, "seller_responded")
        self.assertIn("card network", dispute.last_error)
        self.assertEqual(ReviewQueueItem.query.one().kind, "refund_failed")

        with self.assertRaises(StateConflict):
            self.engine.seller_respond_to_dispute(seller_id="seller-1", dispute_id=dispute.id, action="reject")

        dispute = self.engine.seller_respond_to_dispute(
            seller_id="seller-1",
            dispute_id=dispute.id,
            action="full_refund",
            note="Retrying refund",
        )
        self.assertEqual(dispute.status, "resolved")
        self.assertIsNone(dispute.last_error)
        self.assertEqual(self.engine.get_order(order.id).status, OrderStatus.REFUNDED)
        self.assertEqual(len(self.gateway.refunds), 1)

    def test_transient_refund_failure_is_retried(self):
        order = self.delivered_order(total=1000)
        dispute = self._open(order)
        self.gateway.fail_next("refund", ExternalDependencyError("503 from gateway", transient=True))
        self.engine.seller_respond_to_dispute(
            seller_id="seller-1",
            dispute_id=dispute.id,
            action="full_refund",
            note="Refund",
        )
        self.assertEqual(self.engine.get_order(order.id).status, OrderStatus.REFUNDED)
        self.assertEqual(len(self.gateway.refunds), 1)
        self.assertEqual(ReviewQueueItem.query.count(), 0)

    def _refund_lost_in_transit(self, action, **kwargs):
        order = self.delivered_order(total=1000)
        dispute = self._open(order)
        self.gateway.timeout_after_accept("refund")
        with self.assertRaises(GatewayTimeout):
            self.engine.seller_respond_to_dispute(
                seller_id="seller-1",
                dispute_id=dispute.id,
                action=action,
                note="Refund",
                **kwargs,
            )
        self.assertEqual(len(self.gateway.refunds), 1)
        self.assertEqual(self.engine.get_order(order.id).status, OrderStatus.DISPUTE_RESOLVED)
        return order, dispute

    def test_admin_cannot_switch_action_after_refund_was_accepted(self):
        order, dispute = self._refund_lost_in_transit("full_refund")
        for action in ("reject", "redeliver", "partial_refund"):
            with self.assertRaises(StateConflict):
                self.engine.admin_resolve_dispute(
                    admin_id="admin-1",
                    dispute_id=dispute.id,
                    action=action,
                    note="Seller evidence checks out",
                    refund_amount_minor=400,
                )
        self.assertEqual(self.engine.get_order(order.id).status, OrderStatus.DISPUTE_RESOLVED)

        dispute = self.engine.admin_resolve_dispute(
            admin_id="admin-1",
            dispute_id=dispute.id,
            action="full_refund",
            note="Completing the refund the gateway already took",
        )
        self.assertEqual(dispute.status, "resolved")
        self.assertIsNone(dispute.pending_refund_action)
        order = self.engine.get_order(order.id)
        self.assertEqual(order.status, OrderStatus.REFUNDED)
        self.assertEqual(order.refunded_amount_minor, 1000)
        self.assertEqual(len(self.gateway.refunds), 1)

        self.engine.run_payout_sweep()
        self.assertEqual(self.gateway.transfers, {})
        self.assertEqual(Payout.query.count(), 0)

    def test_retry_after_lost_partial_refund_keeps_amount(self):
        order, dispute = self._refund_lost_in_transit("partial_refund", refund_amount_minor=300)
        dispute = self.engine.disputes.get(dispute.id)
        self.assertEqual(dispute.pending_refund_action, "partial_refund")
        self.assertEqual(dispute.pending_refund_minor, 300)

        with self.assertRaises(StateConflict):
            self.engine.admin_resolve_dispute(
                admin_id="admin-1", dispute_id=dispute.id, action="full_refund", note="Refund all"
            )
        with self.assertRaises(StateConflict):
            self.engine.admin_resolve_dispute(
                admin_id="admin-1",
                dispute_id=dispute.id,
                action="partial_refund",
                note="Refund more",
                refund_amount_minor=500,
            )

        self.engine.admin_resolve_dispute(
            admin_id="admin-1", dispute_id=dispute.id, action="partial_refund", note="Finish the partial refund"
        )
        order = self.engine.get_order(order.id)
        self.assertEqual(order.status, OrderStatus.COMPLETED)
        self.assertEqual(order.refunded_amount_minor, 300)
        self.assertEqual(order.total_amount_minor, 700)
        self.assertEqual([r["amount_minor"] for r in self.gateway.refunds.values()], [300])

    def test_seller_retry_after_lost_refund_completes_once(self):
        order, dispute = self._refund_lost_in_transit("full_refund")
        with self.assertRaises(StateConflict):
            self.engine.seller_respond_to_dispute(
                seller_id="seller-1", dispute_id=dispute.id, action="partial_refund", refund_amount_minor=100
            )
        self.engine.seller_respond_to_dispute(seller_id="seller-1", dispute_id=dispute.id, action="full_refund")
        self.assertEqual(self.engine.get_order(order.id).status, OrderStatus.REFUNDED)
        self.assertEqual(len(self.gateway.refunds), 1)

    def test_refund_key_reused_with_other_amount_goes_to_review(self):
        order = self.delivered_order(total=1000)
        dispute = self._open(order)
        self.gateway.refund(
            intent_ref=order.external_payment_reference or order.payment_intent_ref,
            amount_minor=300,
            idempotency_key=f"order:{order.id}:refund:dispute:{dispute.id}",
        )
        with self.assertRaises(InvariantViolation) as ctx:
            self.engine.seller_respond_to_dispute(
                seller_id="seller-1", dispute_id=dispute.id, action="full_refund", note="Refund"
            )
        item = ReviewQueueItem.query.filter_by(kind="refund_amount_mismatch").one()
        self.assertEqual(ctx.exception.review_item_id, item.id)
        order = self.engine.get_order(order.id)
        self.assertEqual(order.status, OrderStatus.DISPUTE_RESOLVED)
        self.assertEqual(order.refunded_amount_minor, 0)
        self.assertIn("expected 1000", self.engine.disputes.get(dispute.id).last_error)


class FixedFeeDisputeTestCase(EscrowTestCase):
    config_overrides = {"partial_refund_fee_policy": "fixed"}

    def test_partial_refund_keeps_platform_fee(self):
        order = self.delivered_order(total=1000)
        dispute = self.engine.open_dispute(
            buyer_id="buyer-1",
            order_id=order.id,
            category="wrong_item",
            subject="Half the bundle missing",
        )
        self.engine.seller_respond_to_dispute(
            seller_id="seller-1",
            dispute_id=dispute.id,
            action="partial_refund",
            refund_amount_minor=300,
        )
        order = self.engine.get_order(order.id)
        self.assertEqual((order.total_amount_minor, order.platform_fee_minor, order.seller_amount_minor), (700, 100, 600))
        self.assertEqual(Payout.query.one().amount_minor, 600)


if __name__ == "__main__":
    unittest.main()
