from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from keymarket.extensions import db
from keymarket.services.engine import get_engine
from keymarket.services.webhook_service import process_payment_webhook
from keymarket.utils.observability import get_request_id

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


@webhooks_bp.post("/payments")
def payments_webhook():
    engine = get_engine()
    raw = request.get_data() or b"{}"
    sig = request.headers.get("Stripe-Signature") or request.headers.get("X-Payments-Signature")
    payload = request.get_json(silent=True) or {}

    if engine.config.webhook_queue_enabled:
        try:
            from keymarket.tasks.settlement_tasks import process_payment_webhook_task

            process_payment_webhook_task.delay(
                payload=payload if isinstance(payload, dict) else {},
                raw_text=raw.decode("utf-8", errors="ignore"),
                signature=sig,
                trace_id=get_request_id(),
            )
            return jsonify({"ok": True, "queued": True, "trace_id": get_request_id()}), 200
        except Exception:
            db.session.rollback()
            current_app.logger.exception("payment_webhook_enqueue_failed")

    body, status = process_payment_webhook(engine, payload=payload, raw=raw, signature=sig, source="api/webhooks/payments")
    return jsonify(body), int(status)
