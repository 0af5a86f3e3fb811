from __future__ import annotations

import hashlib
import hmac
import json
import unittest

from escrow_case import EscrowTestCase
from keymarket.models import ReviewQueueItem


class ApiErrorContractTestCase(EscrowTestCase):
    def _create(self, headers=None, **overrides):
        body = {
            "shop_id": "shop-1",
            "checkout_session_key": "cs_http_1",
            "items": [{"product_ref": "game-key-std", "quantity": 2, "unit_price_minor": 500}],
        }
        body.update(overrides)
        return self.client.post("/api/orders", json=body, headers=headers or self.auth("buyer-1"))

    def test_unknown_api_route_returns_json_error_with_trace_id(self):
        res = self.client.get("/api/does-not-exist", headers={"X-Request-Id": "rid-404"})
        self.assertEqual(res.status_code, 404)
        body = res.get_json(force=True)
        self.assertFalse(body["ok"])
        self.assertEqual(body["status"], 404)
        self.assertEqual(body["trace_id"], "rid-404")
        self.assertEqual(res.headers.get("X-Request-Id"), "rid-404")

    def test_missing_order_uses_error_taxonomy(self):
        res = self.client.get("/api/orders/999", headers=self.auth("buyer-1"))
        self.assertEqual(res.status_code, 404)
        body = res.get_json()
        self.assertEqual(body["error"], "NOT_FOUND")
        self.assertTrue(body["trace_id"])

    def test_missing_token_is_unauthenticated(self):
        res = self.client.get("/api/orders")
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.get_json()["error"], "UNAUTHENTICATED")

    def test_forged_token_is_unauthenticated(self):
        res = self.client.get("/api/orders", headers={"Authorization": "Bearer not-a-jwt"})
        self.assertEqual(res.status_code, 401)

    def test_stranger_cannot_read_order(self):
        order_id = self._create().get_json()["order"]["id"]
        res = self.client.get(f"/api/orders/{order_id}", headers=self.auth("buyer-2"))
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["error"], "FORBIDDEN")
        res = self.client.get(f"/api/orders/{order_id}", headers=self.auth("admin-1", role="admin"))
        self.assertEqual(res.status_code, 200)

    def test_delivered_code_visible_to_order_parties_only(self):
        order = self.delivered_order()
        for user_id, role in (("buyer-1", "buyer"), ("seller-1", "seller"), ("admin-1", "admin")):
            res = self.client.get(f"/api/orders/{order.id}", headers=self.auth(user_id, role=role))
            self.assertEqual(res.status_code, 200)
            self.assertEqual(res.get_json()["order"]["delivery"]["code"], "AAAA-BBBB-CCCC")
        res = self.client.get(f"/api/orders/{order.id}", headers=self.auth("buyer-2"))
        self.assertEqual(res.status_code, 403)
        self.assertNotIn("AAAA-BBBB-CCCC", res.get_data(as_text=True))

    def test_admin_routes_require_admin_role(self):
        res = self.client.get("/api/admin/review-items", headers=self.auth("buyer-1"))
        self.assertEqual(res.status_code, 403)
        res = self.client.get("/api/admin/review-items", headers=self.auth("admin-1", role="admin"))
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["items"], [])

    def test_create_order_over_http(self):
        res = self._create()
        self.assertEqual(res.status_code, 201)
        body = res.get_json()
        self.assertTrue(body["created"])
        self.assertEqual(body["order"]["status"], "payment_pending")
        self.assertEqual(body["order"]["total_amount_minor"], 1000)
        self.assertEqual(body["order"]["platform_fee_minor"], 100)
        self.assertEqual(body["order"]["seller_amount_minor"], 900)
        self.assertTrue(body["payment"]["intent_ref"])

        again = self._create()
        self.assertEqual(again.status_code, 200)
        self.assertFalse(again.get_json()["created"])
        self.assertEqual(again.get_json()["order"]["id"], body["order"]["id"])

    def test_idempotency_key_replay_and_reuse(self):
        headers = dict(self.auth("buyer-1"), **{"Idempotency-Key": "idem-1"})
        first = self._create(headers=headers)
        self.assertEqual(first.status_code, 201)
        replay = self._create(headers=headers)
        self.assertEqual(replay.status_code, 201)
        self.assertEqual(replay.get_json(), first.get_json())

        reuse = self._create(headers=headers, checkout_session_key="cs_http_2")
        self.assertEqual(reuse.status_code, 409)
        self.assertEqual(reuse.get_json()["error"], "IDEMPOTENCY_KEY_REUSE")

    def test_failed_request_releases_idempotency_key(self):
        headers = dict(self.auth("buyer-1"), **{"Idempotency-Key": "idem-2"})
        bad = self._create(headers=headers, shop_id="")
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(bad.get_json()["error"], "VALIDATION_ERROR")
        self.assertEqual(self._create(headers=headers, shop_id="").status_code, 400)

    def test_unknown_shop_is_not_found(self):
        res = self._create(shop_id="shop-missing")
        self.assertEqual(res.status_code, 404)

    def test_confirm_before_delivery_is_state_conflict(self):
        order_id = self._create().get_json()["order"]["id"]
        self.engine.confirm_payment(self.engine.get_order(order_id).payment_intent_ref)
        res = self.client.post(f"/api/orders/{order_id}/confirm", headers=self.auth("buyer-1"))
        self.assertEqual(res.status_code, 409)
        body = res.get_json()
        self.assertEqual(body["error"], "STATE_CONFLICT")
        self.assertEqual(body["details"]["status"], "paid")

    def test_full_flow_over_http(self):
        created = self._create().get_json()
        order_id = created["order"]["id"]
        paid = self.client.post(
            "/api/payments/confirm",
            json={"external_reference": created["payment"]["intent_ref"]},
            headers=self.auth("buyer-1"),
        )
        self.assertEqual(paid.status_code, 200)
        self.assertEqual(paid.get_json()["status"], "paid")

        wrong_seller = self.client.post(
            f"/api/orders/{order_id}/delivery",
            json={"delivery": {"code": "KEY-1"}},
            headers=self.auth("seller-2", role="seller"),
        )
        self.assertEqual(wrong_seller.status_code, 403)

        delivered = self.client.post(
            f"/api/orders/{order_id}/delivery",
            json={"delivery": {"code": "KEY-1"}},
            headers=self.auth("seller-1", role="seller"),
        )
        self.assertEqual(delivered.status_code, 200)
        self.assertEqual(delivered.get_json()["order"]["status"], "awaiting_confirmation")

        confirmed = self.client.post(f"/api/orders/{order_id}/confirm", headers=self.auth("buyer-1"))
        self.assertEqual(confirmed.get_json()["order"]["status"], "completed")

        timeline = self.client.get(f"/api/orders/{order_id}/timeline", headers=self.auth("buyer-1")).get_json()
        self.assertEqual(
            [row["to_status"] for row in timeline["items"]],
            ["payment_pending", "paid", "awaiting_confirmation", "completed"],
        )

        sweep = self.client.post("/api/admin/jobs/payout-sweep", headers=self.auth("admin-1", role="admin"))
        self.assertEqual(sweep.status_code, 200)

        payouts = self.client.get("/api/sellers/seller-1/payouts", headers=self.auth("seller-1", role="seller"))
        items = payouts.get_json()["items"]
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0]["status"], "completed")
        self.assertEqual(items[0]["amount_minor"], 900)
        self.assertEqual(items[0]["order_ids"], [order_id])

        other = self.client.get("/api/sellers/seller-1/payouts", headers=self.auth("seller-2", role="seller"))
        self.assertEqual(other.status_code, 403)

    def test_health(self):
        res = self.client.get("/api/health")
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["db"], "ok")
        self.assertEqual(body["payments"]["status"], "configured")


class PaymentWebhookTestCase(EscrowTestCase):
    config_overrides = {"webhook_secret": "whsec_test"}
    auto_settle = False

    def _post(self, event: dict, *, secret: str = "whsec_test"):
        raw = json.dumps(event).encode("utf-8")
        sig = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
        return self.client.post(
            "/api/webhooks/payments",
            data=raw,
            content_type="application/json",
            headers={"X-Payments-Signature": sig},
        )

    def _event(self, order, *, event_id: str = "evt_1", amount: int | None = None) -> dict:
        return {
            "id": event_id,
            "type": "payment_intent.succeeded",
            "data": {
                "intent_ref": order.payment_intent_ref,
                "amount_minor": order.total_amount_minor if amount is None else amount,
                "currency": order.currency,
                "metadata": {"buyer_id": order.buyer_id, "checkout_session_key": order.checkout_session_key},
            },
        }

    def test_signed_webhook_marks_order_paid_once(self):
        order = self.new_order()
        res = self._post(self._event(order))
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["result"]["status"], "paid")
        self.assertEqual(self.engine.get_order(order.id).status, "paid")

        again = self._post(self._event(order))
        self.assertEqual(again.status_code, 200)
        self.assertTrue(again.get_json()["duplicate"])

        # A different event id for the same payment is still one transition.
        other = self._post(self._event(order, event_id="evt_2"))
        self.assertFalse(other.get_json()["result"]["created"])
        self.assertEqual(len(self.engine.store.timeline(order.id)), 2)

    def test_bad_signature_is_rejected(self):
        order = self.new_order()
        res = self._post(self._event(order), secret="whsec_wrong")
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.get_json()["error"], "INVALID_SIGNATURE")
        self.assertEqual(self.engine.get_order(order.id).status, "payment_pending")

    def test_amount_mismatch_goes_to_review(self):
        order = self.new_order(total=1000)
        res = self._post(self._event(order, amount=900))
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["error"], "INVARIANT_VIOLATION")
        item = ReviewQueueItem.query.one()
        self.assertEqual(body["review_item_id"], item.id)
        self.assertEqual(item.kind, "amount_mismatch")
        self.assertEqual(self.engine.get_order(order.id).status, "payment_pending")


if __name__ == "__main__":
    unittest.main()
