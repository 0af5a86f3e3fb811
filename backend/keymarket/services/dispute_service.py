from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from keymarket.errors import (
    ExternalDependencyError,
    Forbidden,
    InvariantViolation,
    NotFound,
    StateConflict,
    ValidationError,
)
from keymarket.extensions import db
from keymarket.models import Dispute, Order
from keymarket.services.delivery_service import normalize_delivery_payload
from keymarket.services.order_store import OrderStatus
from keymarket.services.review_queue import ReviewKind
from keymarket.utils.commission import split_after_partial_refund
from keymarket.utils.events import log_event
from keymarket.utils.retry import call_gateway

logger = logging.getLogger(__name__)


class DisputeStatus:
    OPEN = "open"
    SELLER_RESPONDED = "seller_responded"
    ESCALATED = "escalated"
    RESOLVED = "resolved"

    UNRESOLVED = {OPEN, SELLER_RESPONDED, ESCALATED}


class DisputeAction:
    REDELIVER = "redeliver"
    PARTIAL_REFUND = "partial_refund"
    FULL_REFUND = "full_refund"
    REJECT = "reject"

    ALL = (REDELIVER, PARTIAL_REFUND, FULL_REFUND, REJECT)
    REFUNDS = {PARTIAL_REFUND, FULL_REFUND}


CATEGORIES = ("no_delivery", "wrong_item", "defective_code")
MAX_EVIDENCE = 10


class DisputeWorkflow:
    """Buyer disputes on delivered orders and their seller or admin resolution.

    Opening a dispute moves the order out of ``awaiting_confirmation`` in the
    same conditional write that links the dispute, so an auto-confirm sweep
    racing with it loses. Resolution passes through ``dispute_resolved``;
    refunds commit that step before calling the gateway, so a failed refund
    leaves a resumable order instead of a half-applied one.
    """

    def __init__(self, config, store, gateway, catalog, delivery, payouts, review_queue, notifier):
        self.config = config
        self.store = store
        self.gateway = gateway
        self.catalog = catalog
        self.delivery = delivery
        self.payouts = payouts
        self.review_queue = review_queue
        self.notifier = notifier

    def get(self, dispute_id) -> Dispute:
        try:
            did = int(dispute_id)
        except (TypeError, ValueError):
            raise NotFound("Dispute not found")
        dispute = db.session.get(Dispute, did)
        if dispute is None:
            raise NotFound("Dispute not found", details={"dispute_id": did})
        return dispute

    def open_dispute(
        self,
        *,
        buyer_id: str,
        order_id,
        category: str,
        subject: str,
        description: str = "",
        evidence=None,
        now: datetime | None = None,
    ) -> Dispute:
        category = (category or "").strip().lower()
        if category not in CATEGORIES:
            raise ValidationError(f"category must be one of {', '.join(CATEGORIES)}")
        subject = (subject or "").strip()
        if not subject:
            raise ValidationError("subject is required")
        evidence = evidence or []
        if not isinstance(evidence, list) or len(evidence) > MAX_EVIDENCE:
            raise ValidationError(f"evidence must be a list of at most {MAX_EVIDENCE} attachment refs")
        evidence = [str(ref).strip()[:500] for ref in evidence if str(ref).strip()]

        order = self.store.get(order_id)
        if order.buyer_id != str(buyer_id):
            raise Forbidden("Only the buyer of this order can open a dispute")
        if order.status != OrderStatus.AWAITING_CONFIRMATION:
            raise StateConflict(
                f"Disputes can only be opened on delivered orders awaiting confirmation (order is {order.status})",
                details={"order_id": int(order.id), "status": order.status},
            )
        if Dispute.query.filter_by(open_order_id=int(order.id)).first() is not None:
            raise StateConflict("This order already has an open dispute", details={"order_id": int(order.id)})

        opened_at = now or self.store.now()
        dispute = Dispute(
            order_id=int(order.id),
            open_order_id=int(order.id),
            buyer_id=order.buyer_id,
            seller_id=order.seller_id,
            category=category,
            subject=subject[:200],
            description=(description or "").strip()[:5000],
            evidence_json=json.dumps(evidence),
            status=DisputeStatus.OPEN,
            created_at=opened_at,
            updated_at=opened_at,
        )
        db.session.add(dispute)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise StateConflict("This order already has an open dispute", details={"order_id": int(order_id)})
        # Status guard plus deadline cleared in one write: a sweep that read the
        # order earlier can no longer complete it.
        self.store.transition(
            order,
            OrderStatus.DISPUTED,
            actor_type="buyer",
            actor_id=str(buyer_id),
            reason=f"dispute_opened:{category}",
            changes={"dispute_id": int(dispute.id), "auto_confirm_deadline": None},
            conditions=(Order.dispute_id.is_(None),),
            metadata={"dispute_id": int(dispute.id)},
            commit=False,
        )
        log_event(
            "dispute_opened",
            actor_id=buyer_id,
            subject_type="dispute",
            subject_id=dispute.id,
            metadata={"order_id": int(order_id), "category": category},
        )
        db.session.commit()
        dispute = self.get(dispute.id)
        logger.info("dispute_opened dispute_id=%s order_id=%s category=%s", dispute.id, dispute.order_id, category)
        payload = {"dispute_id": int(dispute.id), "order_id": int(dispute.order_id), "category": category}
        self.notifier.notify(dispute.seller_id, "dispute_opened", payload)
        self.notifier.notify_admins("dispute_opened", payload)
        return dispute

    def seller_respond(
        self,
        *,
        seller_id: str,
        dispute_id,
        action: str,
        note: str = "",
        new_delivery_payload=None,
        refund_amount_minor: int | None = None,
    ) -> Dispute:
        action = self._validate_action(action)
        dispute = self.get(dispute_id)
        order = self.store.get(dispute.order_id)
        owner = self.catalog.get_shop_owner(order.shop_id)
        if not owner or str(owner) != str(seller_id) or order.seller_id != str(seller_id):
            raise Forbidden("Only the seller who owns this shop can respond to the dispute")

        resuming = dispute.status == DisputeStatus.SELLER_RESPONDED and order.status == OrderStatus.DISPUTE_RESOLVED
        if not resuming and dispute.status != DisputeStatus.OPEN:
            raise StateConflict(
                f"Dispute is {dispute.status}; the seller can only respond to open disputes",
                details={"dispute_id": int(dispute.id), "status": dispute.status},
            )
        if resuming:
            refund = self._pinned_refund(dispute, action, refund_amount_minor)
        else:
            refund = self._refund_amount(order, action, refund_amount_minor)
        encoded = normalize_delivery_payload(new_delivery_payload) if new_delivery_payload is not None else None

        now = self.store.now()
        if action == DisputeAction.REJECT:
            dispute.status = DisputeStatus.ESCALATED
            dispute.seller_action = action
            dispute.seller_note = (note or "").strip()[:5000]
            dispute.seller_responded_at = now
            log_event("dispute_escalated", actor_id=seller_id, subject_type="dispute", subject_id=dispute.id)
            db.session.commit()
            logger.info("dispute_escalated dispute_id=%s order_id=%s", dispute.id, dispute.order_id)
            payload = {"dispute_id": int(dispute.id), "order_id": int(dispute.order_id)}
            self.notifier.notify_many([dispute.buyer_id, dispute.seller_id], "dispute_escalated", payload)
            self.notifier.notify_admins("dispute_escalated", payload)
            return dispute

        if not resuming:
            dispute.status = DisputeStatus.SELLER_RESPONDED
            dispute.seller_action = action
            dispute.seller_note = (note or "").strip()[:5000]
            dispute.seller_responded_at = now
        return self._resolve(
            dispute,
            order,
            action,
            actor_type="seller",
            actor_id=str(seller_id),
            note=note,
            encoded_payload=encoded,
            refund_minor=refund,
        )

    def admin_resolve(
        self,
        *,
        admin_id: str,
        dispute_id,
        action: str,
        note: str = "",
        new_delivery_payload=None,
        refund_amount_minor: int | None = None,
    ) -> Dispute:
        action = self._validate_action(action)
        dispute = self.get(dispute_id)
        order = self.store.get(dispute.order_id)
        stuck = dispute.status in DisputeStatus.UNRESOLVED and order.status == OrderStatus.DISPUTE_RESOLVED
        if dispute.status != DisputeStatus.ESCALATED and not stuck:
            raise StateConflict(
                f"Admins resolve escalated disputes only (dispute is {dispute.status})",
                details={"dispute_id": int(dispute.id), "status": dispute.status},
            )
        if not (note or "").strip():
            raise ValidationError("A resolution note is required")
        if order.status == OrderStatus.DISPUTE_RESOLVED:
            refund = self._pinned_refund(dispute, action, refund_amount_minor)
        else:
            refund = self._refund_amount(order, action, refund_amount_minor)
        encoded = normalize_delivery_payload(new_delivery_payload) if new_delivery_payload is not None else None
        return self._resolve(
            dispute,
            order,
            action,
            actor_type="admin",
            actor_id=str(admin_id),
            note=note,
            encoded_payload=encoded,
            refund_minor=refund,
        )

    def _validate_action(self, action: str) -> str:
        action = (action or "").strip().lower()
        if action not in DisputeAction.ALL:
            raise ValidationError(f"action must be one of {', '.join(DisputeAction.ALL)}")
        return action

    def _refund_amount(self, order: Order, action: str, refund_amount_minor) -> int:
        if action == DisputeAction.FULL_REFUND:
            return int(order.total_amount_minor)
        if action != DisputeAction.PARTIAL_REFUND:
            return 0
        if refund_amount_minor is None:
            raise ValidationError("refund_amount_minor is required for a partial refund")
        try:
            refund = int(refund_amount_minor)
        except (TypeError, ValueError):
            raise ValidationError("refund_amount_minor must be an integer")
        if refund <= 0 or refund >= int(order.total_amount_minor):
            raise ValidationError(
                "refund_amount_minor must be greater than zero and less than the order total",
                details={"total_amount_minor": int(order.total_amount_minor)},
            )
        return refund

    def _pinned_refund(self, dispute: Dispute, action: str, refund_amount_minor) -> int:
        """A dispute whose refund already reached the gateway can only finish with that same refund."""
        pending = dispute.pending_refund_action
        if not pending or action != pending:
            raise StateConflict(
                "A refund is already in progress for this dispute; only the same refund can complete it",
                details={"dispute_id": int(dispute.id), "action": pending or ""},
            )
        amount = int(dispute.pending_refund_minor or 0)
        if action == DisputeAction.PARTIAL_REFUND and refund_amount_minor is not None:
            try:
                requested = int(refund_amount_minor)
            except (TypeError, ValueError):
                raise ValidationError("refund_amount_minor must be an integer")
            if requested != amount:
                raise StateConflict(
                    "A refund of a different amount is already in progress for this dispute",
                    details={"dispute_id": int(dispute.id), "refund_amount_minor": amount},
                )
        return amount

    def _resolve(
        self,
        dispute: Dispute,
        order: Order,
        action: str,
        *,
        actor_type: str,
        actor_id: str,
        note: str,
        encoded_payload: str | None,
        refund_minor: int,
    ) -> Dispute:
        dispute_id = int(dispute.id)
        order_id = int(order.id)
        if order.status == OrderStatus.DISPUTED:
            if action in DisputeAction.REFUNDS:
                dispute.pending_refund_action = action
                dispute.pending_refund_minor = int(refund_minor)
            self.store.transition(
                order,
                OrderStatus.DISPUTE_RESOLVED,
                actor_type=actor_type,
                actor_id=actor_id,
                reason=f"dispute_resolution:{action}",
                changes={"dispute_id": dispute_id},
                metadata={"dispute_id": dispute_id, "action": action},
                commit=False,
            )
            if action in DisputeAction.REFUNDS:
                # Decision is durable before money moves.
                db.session.commit()
        elif order.status != OrderStatus.DISPUTE_RESOLVED:
            raise StateConflict(
                f"Order is {order.status}; the dispute can no longer change it",
                details={"order_id": order_id, "status": order.status},
            )

        order = self.store.get(order_id)
        if action in DisputeAction.REFUNDS:
            self._issue_refund(self.get(dispute_id), order, refund_minor)
            order = self.store.get(order_id)

        now = self.store.now()
        if action == DisputeAction.REDELIVER:
            self.store.transition(
                order,
                OrderStatus.AWAITING_DELIVERY,
                actor_type=actor_type,
                actor_id=actor_id,
                reason="dispute_redeliver",
                changes={"dispute_id": None, "delivered_at": None, "auto_confirm_deadline": None},
                commit=False,
            )
            if encoded_payload is not None:
                self.delivery.apply_delivery(
                    order,
                    encoded_payload,
                    actor_type=actor_type,
                    actor_id=actor_id,
                    commit=False,
                    reason="redelivered",
                )
        elif action == DisputeAction.FULL_REFUND:
            self.store.transition(
                order,
                OrderStatus.REFUNDED,
                actor_type=actor_type,
                actor_id=actor_id,
                reason="dispute_full_refund",
                changes={"dispute_id": None, "refunded_amount_minor": refund_minor, "refunded_at": now},
                commit=False,
            )
        elif action == DisputeAction.PARTIAL_REFUND:
            retained, fee, seller_amount = split_after_partial_refund(
                total_minor=int(order.total_amount_minor),
                fee_minor=int(order.platform_fee_minor),
                refund_minor=refund_minor,
                fee_bps=self.config.platform_fee_bps,
                policy=self.config.partial_refund_fee_policy,
            )
            self.store.transition(
                order,
                OrderStatus.COMPLETED,
                actor_type=actor_type,
                actor_id=actor_id,
                reason="dispute_partial_refund",
                changes={
                    "dispute_id": None,
                    "total_amount_minor": retained,
                    "platform_fee_minor": fee,
                    "seller_amount_minor": seller_amount,
                    "refunded_amount_minor": refund_minor,
                    "refunded_at": now,
                    "completed_at": now,
                },
                metadata={"refund_minor": refund_minor, "fee_policy": self.config.partial_refund_fee_policy},
                commit=False,
            )
        else:
            self.store.transition(
                order,
                OrderStatus.COMPLETED,
                actor_type=actor_type,
                actor_id=actor_id,
                reason="dispute_rejected",
                changes={"dispute_id": None, "completed_at": now},
                commit=False,
            )

        dispute = self.get(dispute_id)
        dispute.status = DisputeStatus.RESOLVED
        dispute.open_order_id = None
        dispute.resolution_action = action
        dispute.resolution_note = (note or "").strip()[:5000]
        dispute.resolution_refund_minor = refund_minor or None
        dispute.pending_refund_action = None
        dispute.pending_refund_minor = None
        dispute.resolved_by = f"{actor_type}:{actor_id}"[:64]
        dispute.resolved_at = now
        dispute.last_error = None
        log_event(
            "dispute_resolved",
            actor_id=actor_id,
            subject_type="dispute",
            subject_id=dispute_id,
            idempotency_key=f"dispute:{dispute_id}:resolved",
            metadata={"action": action, "by": actor_type, "refund_minor": refund_minor},
        )
        db.session.commit()

        order = self.store.get(order_id)
        dispute = self.get(dispute_id)
        logger.info(
            "dispute_resolved dispute_id=%s order_id=%s action=%s by=%s order_status=%s",
            dispute_id,
            order_id,
            action,
            actor_type,
            order.status,
        )
        payload = {"dispute_id": dispute_id, "order_id": order_id, "action": action}
        self.notifier.notify_many([dispute.buyer_id, dispute.seller_id], "dispute_resolved", payload)
        if order.status == OrderStatus.REFUNDED:
            self.notifier.notify(order.buyer_id, "order_refunded", {"order_id": order_id, "amount_minor": refund_minor})
        if order.status == OrderStatus.COMPLETED:
            self.payouts.enqueue_for_payout(order_id)
        return dispute

    def _issue_refund(self, dispute: Dispute, order: Order, refund_minor: int) -> None:
        key = f"order:{int(order.id)}:refund:dispute:{int(dispute.id)}"
        try:
            result = call_gateway(
                lambda: self.gateway.refund(
                    intent_ref=order.external_payment_reference or order.payment_intent_ref,
                    amount_minor=int(refund_minor),
                    idempotency_key=key,
                ),
                attempts=self.config.gateway_retry_attempts,
                backoff_base=self.config.gateway_retry_backoff_seconds,
                label="refund",
            )
        except ExternalDependencyError as exc:
            dispute = self.get(dispute.id)
            dispute.last_error = exc.message[:2000]
            db.session.commit()
            self.review_queue.flag(
                ReviewKind.REFUND_FAILED,
                subject_type="dispute",
                subject_id=dispute.id,
                details={
                    "dispute_id": int(dispute.id),
                    "order_id": int(order.id),
                    "refund_minor": int(refund_minor),
                    "error": exc.message,
                    "transient": bool(exc.transient),
                },
                dedupe_key=f"{ReviewKind.REFUND_FAILED}:{key}",
            )
            logger.error("dispute_refund_failed dispute_id=%s order_id=%s err=%s", dispute.id, order.id, exc.message)
            raise
        if int(result.amount_minor) != int(refund_minor):
            # The key was already spent on a refund of another amount.
            dispute = self.get(dispute.id)
            dispute.last_error = f"gateway refunded {int(result.amount_minor)}, expected {int(refund_minor)}"
            db.session.commit()
            item = self.review_queue.flag(
                ReviewKind.REFUND_AMOUNT_MISMATCH,
                subject_type="dispute",
                subject_id=dispute.id,
                details={
                    "dispute_id": int(dispute.id),
                    "order_id": int(order.id),
                    "expected_refund_minor": int(refund_minor),
                    "gateway_refund_minor": int(result.amount_minor),
                    "refund_ref": result.refund_ref,
                },
                dedupe_key=f"{ReviewKind.REFUND_AMOUNT_MISMATCH}:{key}",
            )
            logger.error(
                "dispute_refund_amount_mismatch dispute_id=%s expected=%s gateway=%s",
                dispute.id,
                refund_minor,
                result.amount_minor,
            )
            raise InvariantViolation(
                "Gateway refund amount does not match the requested refund",
                review_item_id=int(item.id),
                details={"dispute_id": int(dispute.id)},
            )

    def list_for_buyer(self, buyer_id: str) -> list[Dispute]:
        return Dispute.query.filter_by(buyer_id=str(buyer_id)).order_by(Dispute.created_at.desc(), Dispute.id.desc()).all()

    def list_for_seller(self, seller_id: str) -> list[Dispute]:
        return Dispute.query.filter_by(seller_id=str(seller_id)).order_by(Dispute.created_at.desc(), Dispute.id.desc()).all()

    def list_escalated(self) -> list[Dispute]:
        return (
            Dispute.query.filter(Dispute.status == DisputeStatus.ESCALATED)
            .order_by(Dispute.created_at.asc(), Dispute.id.asc())
            .all()
        )
