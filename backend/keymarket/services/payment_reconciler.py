from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from keymarket.errors import InvariantViolation, StateConflict, ValidationError
from keymarket.extensions import db
from keymarket.models import Order
from keymarket.services.order_store import OrderStatus
from keymarket.services.review_queue import ReviewKind
from keymarket.utils.events import log_event
from keymarket.utils.retry import call_gateway, run_with_retry

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    order_id: int
    created: bool
    status: str

    def to_dict(self) -> dict:
        return {"order_id": int(self.order_id), "created": bool(self.created), "status": self.status}


class PaymentReconciler:
    """Maps gateway payment confirmations onto exactly one pending order.

    Confirmations arrive at least once (webhooks, polling, manual sync). The
    unique external reference on orders makes the second and later deliveries
    a point lookup that changes nothing.
    """

    def __init__(self, config, store, gateway, review_queue, notifier):
        self.config = config
        self.store = store
        self.gateway = gateway
        self.review_queue = review_queue
        self.notifier = notifier

    def confirm_payment(self, external_reference: str) -> ReconcileResult:
        """Ask the gateway about ``external_reference`` and reconcile what it reports."""
        ref = (external_reference or "").strip()
        if not ref:
            raise ValidationError("external_reference is required")

        known = self.store.find_by_external_reference(ref)
        if known is not None:
            return ReconcileResult(order_id=int(known.id), created=False, status=known.status)

        status = call_gateway(
            lambda: self.gateway.confirm_intent(ref),
            attempts=self.config.gateway_retry_attempts,
            backoff_base=self.config.gateway_retry_backoff_seconds,
            label="confirm_intent",
        )
        if status.failed:
            return self.mark_payment_failed(ref, reason=f"gateway_status={status.status}")
        if not status.succeeded:
            raise StateConflict(
                "Payment has not settled yet",
                details={"external_reference": ref, "gateway_status": status.status},
            )
        return self.reconcile(
            ref,
            status.amount_minor,
            status.metadata.get("buyer_id"),
            checkout_session_key=status.metadata.get("checkout_session_key"),
            currency=status.currency,
        )

    def reconcile(
        self,
        external_reference: str,
        amount_minor: int,
        buyer_id: str | None,
        *,
        checkout_session_key: str | None = None,
        currency: str | None = None,
        source: str = "gateway",
    ) -> ReconcileResult:
        ref = (external_reference or "").strip()
        if not ref:
            raise ValidationError("external_reference is required")
        try:
            amount = int(amount_minor)
        except (TypeError, ValueError):
            raise ValidationError("amount must be an integer in minor units")

        known = self.store.find_by_external_reference(ref)
        if known is not None:
            logger.info("payment_reconcile_duplicate ref=%s order_id=%s status=%s", ref, known.id, known.status)
            return ReconcileResult(order_id=int(known.id), created=False, status=known.status)

        order = self.store.find_by_checkout_session(checkout_session_key or "") or self.store.find_by_intent_ref(ref)
        if order is None:
            self._violation(
                ReviewKind.ORPHAN_PAYMENT,
                "Payment confirmation does not match any pending order",
                subject_type="payment",
                subject_id=ref,
                details={
                    "external_reference": ref,
                    "amount_minor": amount,
                    "buyer_id": buyer_id,
                    "checkout_session_key": checkout_session_key,
                    "source": source,
                },
            )

        self._check_consistency(order, ref, amount, buyer_id, currency, source)

        def _attempt() -> ReconcileResult:
            fresh = self.store.get(order.id)
            if fresh.external_payment_reference == ref:
                return ReconcileResult(order_id=int(fresh.id), created=False, status=fresh.status)
            if fresh.status != OrderStatus.PAYMENT_PENDING:
                self._check_consistency(fresh, ref, amount, buyer_id, currency, source)
            self.store.transition(
                fresh,
                OrderStatus.PAID,
                actor_type="gateway",
                reason=f"payment_confirmed:{source}"[:240],
                changes={"external_payment_reference": ref, "paid_at": self.store.now()},
                metadata={"amount_minor": amount},
                commit=False,
            )
            log_event(
                "order_paid",
                actor_id=fresh.buyer_id,
                subject_type="order",
                subject_id=fresh.id,
                idempotency_key=f"order:{int(fresh.id)}:paid",
                metadata={"external_reference": ref, "amount_minor": amount, "source": source},
            )
            db.session.commit()
            return ReconcileResult(order_id=int(fresh.id), created=True, status=OrderStatus.PAID)

        try:
            result = run_with_retry(
                _attempt,
                attempts=self.config.conflict_retry_attempts,
                backoff_base=self.config.conflict_retry_backoff_seconds,
                label="reconcile_payment",
            )
        except IntegrityError:
            # A concurrent delivery of the same confirmation stamped the reference first.
            db.session.rollback()
            winner = self.store.find_by_external_reference(ref)
            if winner is None:
                raise
            return ReconcileResult(order_id=int(winner.id), created=False, status=winner.status)

        if result.created:
            paid = self.store.get(result.order_id)
            logger.info("payment_reconciled order_id=%s ref=%s source=%s", paid.id, ref, source)
            payload = {"order_id": int(paid.id), "total_amount_minor": int(paid.total_amount_minor)}
            self.notifier.notify(paid.buyer_id, "order_paid", payload)
            self.notifier.notify(paid.seller_id, "order_paid", payload)
        return result

    def _check_consistency(self, order: Order, ref: str, amount: int, buyer_id, currency, source: str) -> None:
        base = {
            "order_id": int(order.id),
            "external_reference": ref,
            "source": source,
        }
        if order.status != OrderStatus.PAYMENT_PENDING:
            kind = ReviewKind.DUPLICATE_PAYMENT if order.status in OrderStatus.FUNDED else ReviewKind.PAYMENT_AFTER_CLOSE
            self._violation(
                kind,
                "Payment confirmation arrived for an order that is no longer awaiting payment",
                subject_type="order",
                subject_id=order.id,
                details=dict(base, status=order.status, existing_reference=order.external_payment_reference),
                dedupe=f"{kind}:{ref}",
            )
        expected_currency = (order.currency or "").lower()
        if amount != int(order.total_amount_minor) or (currency and currency.lower() != expected_currency):
            self._violation(
                ReviewKind.AMOUNT_MISMATCH,
                "Confirmed amount does not match the order total",
                subject_type="order",
                subject_id=order.id,
                details=dict(
                    base,
                    expected_amount_minor=int(order.total_amount_minor),
                    confirmed_amount_minor=amount,
                    expected_currency=expected_currency,
                    confirmed_currency=(currency or "").lower(),
                ),
            )
        if buyer_id and str(buyer_id) != order.buyer_id:
            self._violation(
                ReviewKind.BUYER_MISMATCH,
                "Confirmed payer does not match the order buyer",
                subject_type="order",
                subject_id=order.id,
                details=dict(base, expected_buyer_id=order.buyer_id, confirmed_buyer_id=str(buyer_id)),
            )

    def _violation(self, kind: str, message: str, *, subject_type: str, subject_id, details: dict, dedupe: str | None = None):
        ref = details.get("external_reference") or ""
        item = self.review_queue.flag(
            kind,
            subject_type=subject_type,
            subject_id=subject_id,
            details=details,
            dedupe_key=dedupe or f"{kind}:{ref}",
        )
        logger.error("payment_reconcile_rejected kind=%s ref=%s review_item_id=%s", kind, ref, item.id)
        raise InvariantViolation(message, review_item_id=int(item.id), details={"kind": kind})

    def mark_payment_failed(self, external_reference: str, *, reason: str = "") -> ReconcileResult:
        """Close a pending order whose charge failed or expired; later states are left alone."""
        ref = (external_reference or "").strip()
        order = self.store.find_by_intent_ref(ref)
        if order is None:
            logger.warning("payment_failed_unknown_intent ref=%s", ref)
            raise ValidationError("No order is waiting on this payment", details={"external_reference": ref})

        def _attempt() -> ReconcileResult:
            fresh = self.store.get(order.id)
            if fresh.status != OrderStatus.PAYMENT_PENDING:
                return ReconcileResult(order_id=int(fresh.id), created=False, status=fresh.status)
            self.store.transition(
                fresh,
                OrderStatus.PAYMENT_FAILED,
                actor_type="gateway",
                reason=(reason or "payment_failed")[:240],
            )
            return ReconcileResult(order_id=int(fresh.id), created=True, status=OrderStatus.PAYMENT_FAILED)

        result = run_with_retry(
            _attempt,
            attempts=self.config.conflict_retry_attempts,
            backoff_base=self.config.conflict_retry_backoff_seconds,
            label="payment_failed",
        )
        if result.created:
            failed = self.store.get(result.order_id)
            self.notifier.notify(failed.buyer_id, "order_payment_failed", {"order_id": int(failed.id)})
        return result

    def sync_payment_status(self, order_id) -> ReconcileResult:
        """Re-check a pending order's intent with the gateway; the recovery path for lost webhooks."""
        order = self.store.get(order_id)
        if order.status != OrderStatus.PAYMENT_PENDING:
            return ReconcileResult(order_id=int(order.id), created=False, status=order.status)
        if not order.payment_intent_ref:
            raise StateConflict("Order has no payment intent to check", details={"order_id": int(order.id)})
        return self.confirm_payment(order.payment_intent_ref)
