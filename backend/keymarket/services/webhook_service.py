from __future__ import annotations

import hashlib
import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from keymarket.errors import EscrowError, InvariantViolation, ValidationError
from keymarket.extensions import db
from keymarket.models import WebhookEvent
from keymarket.utils.observability import get_request_id

logger = logging.getLogger(__name__)

SUCCEEDED_TYPES = ("payment_intent.succeeded", "payment.succeeded", "charge.succeeded")
FAILED_TYPES = ("payment_intent.payment_failed", "payment_intent.canceled", "payment.failed", "charge.failed")


def _claim_event(engine, event_id: str, event_type: str, reference: str, raw: bytes) -> tuple[WebhookEvent | None, bool]:
    """Return (row, duplicate). A row already processed is a duplicate delivery."""
    row = WebhookEvent.query.filter_by(event_id=event_id).first()
    if row is not None:
        return row, row.status in ("processed", "ignored", "review")
    row = WebhookEvent(
        provider=engine.gateway.name,
        event_id=event_id,
        event_type=event_type[:64],
        reference=reference[:128] or None,
        status="received",
        request_id=get_request_id() or None,
        payload_hash=hashlib.sha256(raw or b"").hexdigest(),
        created_at=datetime.utcnow(),
    )
    db.session.add(row)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        row = WebhookEvent.query.filter_by(event_id=event_id).first()
        return row, True
    return row, False


def _finish(event_id: str, status: str, error: str | None = None) -> None:
    row = WebhookEvent.query.filter_by(event_id=event_id).first()
    if row is None:
        return
    row.status = status
    row.error = (error or "")[:2000] or None
    row.processed_at = datetime.utcnow()
    db.session.commit()


def process_payment_webhook(engine, *, payload: dict, raw: bytes, signature: str | None, source: str = "webhook") -> tuple[dict, int]:
    config = engine.config
    if config.is_live or config.webhook_secret:
        if not engine.gateway.verify_webhook(raw or b"", signature, config.webhook_secret):
            logger.warning("payment_webhook_bad_signature source=%s", source)
            return {"ok": False, "error": "INVALID_SIGNATURE", "message": "Invalid webhook signature", "status": 401}, 401

    if not isinstance(payload, dict):
        return {"ok": False, "error": "VALIDATION_ERROR", "message": "Webhook payload must be an object", "status": 400}, 400
    event = engine.gateway.parse_webhook(payload)
    if not event.event_id or not event.intent_ref:
        return {"ok": False, "error": "VALIDATION_ERROR", "message": "Webhook missing event id or reference", "status": 400}, 400

    _row, duplicate = _claim_event(engine, event.event_id, event.event_type, event.intent_ref, raw)
    if duplicate:
        return {"ok": True, "duplicate": True, "event_id": event.event_id}, 200

    try:
        if event.event_type in SUCCEEDED_TYPES or event.status == "succeeded":
            result = engine.reconciler.reconcile(
                event.intent_ref,
                event.amount_minor,
                event.metadata.get("buyer_id"),
                checkout_session_key=event.metadata.get("checkout_session_key"),
                currency=event.currency or None,
                source=source,
            )
        elif event.event_type in FAILED_TYPES or event.status in ("failed", "canceled"):
            result = engine.reconciler.mark_payment_failed(event.intent_ref, reason=f"webhook:{event.event_type}")
        else:
            _finish(event.event_id, "ignored")
            return {"ok": True, "ignored": True, "event_type": event.event_type}, 200
    except InvariantViolation as exc:
        # Routed to operators; redelivery would not change the outcome.
        _finish(event.event_id, "review", exc.message)
        return {"ok": False, "error": exc.code, "message": exc.message, "review_item_id": exc.review_item_id}, 200
    except ValidationError as exc:
        _finish(event.event_id, "ignored", exc.message)
        return {"ok": True, "ignored": True, "reason": exc.message}, 200
    except EscrowError as exc:
        db.session.rollback()
        _finish(event.event_id, "failed", exc.message)
        logger.warning("payment_webhook_retry_later event_id=%s err=%s", event.event_id, exc.message)
        return exc.to_payload(), int(exc.status)

    _finish(event.event_id, "processed")
    return {"ok": True, "event_id": event.event_id, "result": result.to_dict()}, 200
