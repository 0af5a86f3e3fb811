from __future__ import annotations

import json
import logging
from datetime import datetime

from keymarket.errors import NotFound, StateConflict, VersionConflict
from keymarket.extensions import db
from keymarket.models import Order, OrderTransition

logger = logging.getLogger(__name__)


class OrderStatus:
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_FAILED = "payment_failed"
    PAID = "paid"
    AWAITING_DELIVERY = "awaiting_delivery"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    DISPUTE_RESOLVED = "dispute_resolved"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"

    ALLOWED = {
        PAYMENT_PENDING: {PAID, PAYMENT_FAILED, CANCELLED},
        PAID: {AWAITING_DELIVERY, AWAITING_CONFIRMATION},
        AWAITING_DELIVERY: {AWAITING_CONFIRMATION},
        AWAITING_CONFIRMATION: {COMPLETED, DISPUTED},
        DISPUTED: {DISPUTE_RESOLVED},
        DISPUTE_RESOLVED: {COMPLETED, REFUNDED, AWAITING_DELIVERY},
        COMPLETED: set(),
        REFUNDED: set(),
        CANCELLED: set(),
        PAYMENT_FAILED: set(),
    }

    TERMINAL = {COMPLETED, REFUNDED, CANCELLED, PAYMENT_FAILED}
    DELIVERABLE = {PAID, AWAITING_DELIVERY}
    # Statuses that imply the buyer's money has been captured.
    FUNDED = {PAID, AWAITING_DELIVERY, AWAITING_CONFIRMATION, COMPLETED, DISPUTED, DISPUTE_RESOLVED, REFUNDED}
    # The order holds a dispute back-reference exactly in these statuses.
    WITH_DISPUTE = {DISPUTED, DISPUTE_RESOLVED}


class OrderStore:
    """Versioned order records and the only writer of order status.

    Every transition is one conditional UPDATE on (id, version, status). A
    lost race surfaces as ``VersionConflict`` and leaves the session rolled
    back; nothing here holds a lock across calls.
    """

    def __init__(self, config, *, clock=None):
        self.config = config
        self.clock = clock or datetime.utcnow

    def now(self) -> datetime:
        return self.clock()

    def get(self, order_id) -> Order:
        try:
            oid = int(order_id)
        except (TypeError, ValueError):
            raise NotFound("Order not found")
        order = db.session.get(Order, oid)
        if order is None:
            raise NotFound("Order not found", details={"order_id": oid})
        return order

    def find_by_external_reference(self, external_reference: str) -> Order | None:
        ref = (external_reference or "").strip()
        if not ref:
            return None
        return Order.query.filter_by(external_payment_reference=ref).first()

    def find_by_checkout_session(self, checkout_session_key: str) -> Order | None:
        key = (checkout_session_key or "").strip()
        if not key:
            return None
        return Order.query.filter_by(checkout_session_key=key).first()

    def find_by_intent_ref(self, intent_ref: str) -> Order | None:
        ref = (intent_ref or "").strip()
        if not ref:
            return None
        return Order.query.filter_by(payment_intent_ref=ref).order_by(Order.id.asc()).first()

    def transition(
        self,
        order: Order,
        to_status: str,
        *,
        actor_type: str = "system",
        actor_id: str | None = None,
        reason: str = "",
        changes: dict | None = None,
        conditions=(),
        metadata: dict | None = None,
        expected_version: int | None = None,
        commit: bool = True,
    ) -> Order:
        """Move ``order`` to ``to_status`` if nobody else moved it first.

        ``conditions`` are extra SQL criteria evaluated in the same UPDATE, so
        a check such as "no open dispute" cannot go stale between read and
        write. With ``commit=False`` the caller owns the transaction.
        """
        oid = int(order.id)
        current = order.status
        version = int(order.version if expected_version is None else expected_version)
        if to_status not in OrderStatus.ALLOWED.get(current, set()):
            raise StateConflict(
                f"Order cannot move from {current} to {to_status}",
                details={"order_id": oid, "status": current, "requested": to_status},
            )

        now = self.now()
        values = dict(changes or {})
        values.update({"status": to_status, "version": version + 1, "updated_at": now})
        if to_status not in OrderStatus.WITH_DISPUTE and "dispute_id" not in values:
            values["dispute_id"] = None
        if to_status != OrderStatus.AWAITING_CONFIRMATION and "auto_confirm_deadline" not in values:
            values["auto_confirm_deadline"] = None

        updated = (
            db.session.query(Order)
            .filter(
                Order.id == oid,
                Order.version == version,
                Order.status == current,
                *conditions,
            )
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            db.session.rollback()
            logger.info(
                "order_transition_conflict order_id=%s from=%s to=%s version=%s",
                oid,
                current,
                to_status,
                version,
            )
            raise VersionConflict(
                "Order was changed by another request; reload and try again",
                details={"order_id": oid, "expected_version": version},
            )

        db.session.add(
            OrderTransition(
                order_id=oid,
                from_status=current,
                to_status=to_status,
                from_version=version,
                to_version=version + 1,
                actor_type=(actor_type or "system")[:32],
                actor_id=str(actor_id)[:64] if actor_id is not None else None,
                reason=(reason or "")[:240],
                metadata_json=json.dumps(metadata or {}, default=str)[:4000],
                created_at=now,
            )
        )
        if commit:
            db.session.commit()
        db.session.expire(order)
        logger.info(
            "order_transition order_id=%s from=%s to=%s version=%s actor=%s:%s",
            oid,
            current,
            to_status,
            version + 1,
            actor_type,
            actor_id or "-",
        )
        return order

    def timeline(self, order_id: int) -> list[OrderTransition]:
        return (
            OrderTransition.query.filter_by(order_id=int(order_id))
            .order_by(OrderTransition.id.asc())
            .all()
        )
