from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from keymarket.errors import Forbidden, StateConflict, ValidationError, VersionConflict
from keymarket.extensions import db
from keymarket.models import Order
from keymarket.services.order_store import OrderStatus
from keymarket.utils.events import log_event

logger = logging.getLogger(__name__)

MAX_PAYLOAD_CHARS = 8000


def normalize_delivery_payload(payload) -> str:
    """Validate a seller's delivery and return it serialized for storage."""
    if isinstance(payload, str):
        payload = {"code": payload}
    if not isinstance(payload, dict):
        raise ValidationError("Delivery payload must be an object with a code")
    code = str(payload.get("code") or "").strip()
    if not code:
        raise ValidationError("Delivery payload requires a non-empty code")
    clean = {"code": code}
    instructions = str(payload.get("instructions") or "").strip()
    if instructions:
        clean["instructions"] = instructions
    extra = payload.get("attachments")
    if isinstance(extra, list):
        clean["attachments"] = [str(a)[:500] for a in extra[:20]]
    encoded = json.dumps(clean, ensure_ascii=False)
    if len(encoded) > MAX_PAYLOAD_CHARS:
        raise ValidationError("Delivery payload is too large")
    return encoded


class DeliveryRecorder:
    """Seller delivery, buyer confirmation and pre-payment cancellation."""

    def __init__(self, config, store, notifier, *, payouts=None):
        self.config = config
        self.store = store
        self.notifier = notifier
        self.payouts = payouts

    def grace_period(self) -> timedelta:
        return timedelta(hours=int(self.config.auto_confirm_grace_hours))

    def record_delivery(self, *, seller_id: str, order_id, payload, now: datetime | None = None) -> Order:
        encoded = normalize_delivery_payload(payload)
        order = self.store.get(order_id)
        if order.seller_id != str(seller_id):
            raise Forbidden("Only the seller of this order can deliver it")
        if order.status not in OrderStatus.DELIVERABLE:
            raise StateConflict(
                f"Order cannot be delivered while {order.status}",
                details={"order_id": int(order.id), "status": order.status},
            )
        self.apply_delivery(order, encoded, actor_type="seller", actor_id=str(seller_id), now=now, commit=False)
        db.session.commit()
        order = self.store.get(order_id)
        self.notifier.notify(
            order.buyer_id,
            "order_delivered",
            {
                "order_id": int(order.id),
                "auto_confirm_deadline": order.auto_confirm_deadline.isoformat() if order.auto_confirm_deadline else None,
            },
        )
        return order

    def apply_delivery(
        self,
        order: Order,
        encoded_payload: str,
        *,
        actor_type: str,
        actor_id: str | None,
        now: datetime | None = None,
        commit: bool = True,
        reason: str = "delivered",
    ) -> Order:
        delivered_at = now or self.store.now()
        deadline = delivered_at + self.grace_period()
        self.store.transition(
            order,
            OrderStatus.AWAITING_CONFIRMATION,
            actor_type=actor_type,
            actor_id=actor_id,
            reason=reason,
            changes={
                "delivery_payload": encoded_payload,
                "delivered_at": delivered_at,
                "auto_confirm_deadline": deadline,
            },
            metadata={"auto_confirm_deadline": deadline.isoformat()},
            commit=commit,
        )
        log_event(
            "order_delivered",
            actor_id=actor_id,
            subject_type="order",
            subject_id=order.id,
            metadata={"deadline": deadline.isoformat(), "reason": reason},
        )
        if commit:
            db.session.commit()
        return order

    def confirm_receipt(self, *, buyer_id: str, order_id, now: datetime | None = None) -> Order:
        order = self.store.get(order_id)
        if order.buyer_id != str(buyer_id):
            raise Forbidden("Only the buyer of this order can confirm receipt")
        if order.status == OrderStatus.COMPLETED:
            return order
        if order.status != OrderStatus.AWAITING_CONFIRMATION:
            raise StateConflict(
                f"Order cannot be confirmed while {order.status}",
                details={"order_id": int(order.id), "status": order.status},
            )
        confirmed_at = now or self.store.now()
        try:
            self.store.transition(
                order,
                OrderStatus.COMPLETED,
                actor_type="buyer",
                actor_id=str(buyer_id),
                reason="buyer_confirmed",
                changes={"buyer_confirmed_at": confirmed_at, "completed_at": confirmed_at},
                conditions=(Order.dispute_id.is_(None),),
                commit=False,
            )
        except VersionConflict:
            current = self.store.get(order_id)
            if current.status == OrderStatus.COMPLETED:
                # The auto-confirm sweep got there first; the buyer's intent is satisfied.
                logger.info("confirm_receipt_already_completed order_id=%s", current.id)
                return current
            raise
        log_event(
            "order_completed",
            actor_id=buyer_id,
            subject_type="order",
            subject_id=order.id,
            idempotency_key=f"order:{int(order.id)}:completed",
            metadata={"by": "buyer"},
        )
        db.session.commit()
        order = self.store.get(order_id)
        self._after_completion(order, "order_completed")
        return order

    def _after_completion(self, order: Order, event_kind: str) -> None:
        if self.payouts is not None:
            self.payouts.enqueue_for_payout(order.id)
        payload = {"order_id": int(order.id), "seller_amount_minor": int(order.seller_amount_minor)}
        self.notifier.notify_many([order.buyer_id, order.seller_id], event_kind, payload)

    def cancel_order(self, *, order_id, actor_id: str, actor_type: str = "buyer") -> Order:
        order = self.store.get(order_id)
        if actor_type == "buyer" and order.buyer_id != str(actor_id):
            raise Forbidden("Only the buyer of this order can cancel it")
        if order.status == OrderStatus.CANCELLED:
            return order
        if order.status != OrderStatus.PAYMENT_PENDING:
            raise StateConflict(
                "Only unpaid orders can be cancelled",
                details={"order_id": int(order.id), "status": order.status},
            )
        now = self.store.now()
        self.store.transition(
            order,
            OrderStatus.CANCELLED,
            actor_type=actor_type,
            actor_id=str(actor_id),
            reason="cancelled",
            changes={"cancelled_at": now},
            conditions=(Order.external_payment_reference.is_(None),),
            commit=False,
        )
        log_event("order_cancelled", actor_id=actor_id, subject_type="order", subject_id=order.id)
        db.session.commit()
        return self.store.get(order_id)
