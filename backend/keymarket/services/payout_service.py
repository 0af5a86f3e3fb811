from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from keymarket.errors import ExternalDependencyError, GatewayTimeout, NotFound, StateConflict
from keymarket.extensions import db
from keymarket.models import Order, Payout, PayoutAttempt, PayoutItem
from keymarket.services.order_store import OrderStatus
from keymarket.services.review_queue import ReviewKind
from keymarket.utils.events import log_event
from keymarket.utils.retry import call_gateway

logger = logging.getLogger(__name__)


class PayoutStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING_MANUAL_TRANSFER = "pending_manual_transfer"

    STARTABLE = {PENDING, FAILED}


@dataclass
class SweepSummary:
    enqueued: int = 0
    processed: int = 0
    completed: int = 0
    failed: int = 0
    manual: int = 0
    in_flight: int = 0
    errors: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "enqueued": self.enqueued,
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "manual": self.manual,
            "in_flight": self.in_flight,
            "errors": list(self.errors),
        }


class PayoutSettlementEngine:
    """Batches completed orders per seller shop and transfers their seller share once.

    Transfers are keyed on the payout id (``payout:{id}``) so a later attempt
    can ask the gateway whether an earlier, unanswered attempt went through.
    """

    def __init__(self, config, store, gateway, catalog, review_queue, notifier):
        self.config = config
        self.store = store
        self.gateway = gateway
        self.catalog = catalog
        self.review_queue = review_queue
        self.notifier = notifier

    # enqueue

    def enqueue_for_payout(self, order_id) -> Payout | None:
        """Attach a completed order to its seller's open payout; idempotent on order id."""
        order = self.store.get(order_id)
        existing = PayoutItem.query.filter_by(order_id=int(order.id)).first()
        if existing is not None:
            return db.session.get(Payout, existing.payout_id)
        if order.status != OrderStatus.COMPLETED or order.payout_id is not None:
            logger.info("payout_enqueue_skipped order_id=%s status=%s", order.id, order.status)
            return None
        amount = int(order.seller_amount_minor or 0)
        if amount <= 0:
            logger.info("payout_enqueue_skipped order_id=%s reason=zero_seller_amount", order.id)
            return None

        for _ in range(max(1, int(self.config.conflict_retry_attempts))):
            payout = (
                Payout.query.filter_by(
                    seller_id=order.seller_id,
                    shop_id=order.shop_id,
                    currency=order.currency,
                    status=PayoutStatus.PENDING,
                )
                .order_by(Payout.id.asc())
                .first()
            )
            try:
                if payout is None:
                    payout = Payout(
                        seller_id=order.seller_id,
                        shop_id=order.shop_id,
                        currency=order.currency,
                        amount_minor=0,
                        status=PayoutStatus.PENDING,
                        created_at=self.store.now(),
                        version=1,
                    )
                    db.session.add(payout)
                    db.session.flush()
                appended = (
                    db.session.query(Payout)
                    .filter(
                        Payout.id == int(payout.id),
                        Payout.status == PayoutStatus.PENDING,
                        Payout.version == int(payout.version),
                    )
                    .update(
                        {
                            "amount_minor": Payout.amount_minor + amount,
                            "version": Payout.version + 1,
                            "updated_at": self.store.now(),
                        },
                        synchronize_session=False,
                    )
                )
                if appended != 1:
                    # The payout started processing under us; open a fresh one.
                    db.session.rollback()
                    continue
                db.session.add(PayoutItem(payout_id=int(payout.id), order_id=int(order.id), amount_minor=amount))
                log_event(
                    "order_enqueued_for_payout",
                    subject_type="order",
                    subject_id=order.id,
                    idempotency_key=f"order:{int(order.id)}:payout_enqueued",
                    metadata={"payout_id": int(payout.id), "amount_minor": amount},
                )
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                existing = PayoutItem.query.filter_by(order_id=int(order.id)).first()
                if existing is None:
                    raise
                return db.session.get(Payout, existing.payout_id)
            db.session.expire(payout)
            logger.info("payout_enqueued order_id=%s payout_id=%s amount=%s", order.id, payout.id, amount)
            return payout
        raise StateConflict("Could not attach order to a payout", details={"order_id": int(order.id)})

    def enqueue_unbatched(self, *, limit: int | None = None) -> int:
        """Pick up completed orders that never made it into a payout (crash between steps)."""
        rows = (
            db.session.query(Order.id)
            .outerjoin(PayoutItem, PayoutItem.order_id == Order.id)
            .filter(
                Order.status == OrderStatus.COMPLETED,
                Order.payout_id.is_(None),
                Order.seller_amount_minor > 0,
                PayoutItem.id.is_(None),
            )
            .order_by(Order.id.asc())
            .limit(int(limit or self.config.sweep_batch_limit))
            .all()
        )
        count = 0
        for (oid,) in rows:
            try:
                if self.enqueue_for_payout(oid) is not None:
                    count += 1
            except StateConflict as exc:
                logger.warning("payout_catchup_skipped order_id=%s err=%s", oid, exc.message)
        return count

    # processing

    def get(self, payout_id) -> Payout:
        payout = db.session.get(Payout, int(payout_id))
        if payout is None:
            raise NotFound("Payout not found", details={"payout_id": payout_id})
        return payout

    def _cas(self, payout: Payout, from_statuses, values: dict) -> bool:
        values = dict(values)
        values.update({"version": int(payout.version) + 1, "updated_at": self.store.now()})
        updated = (
            db.session.query(Payout)
            .filter(
                Payout.id == int(payout.id),
                Payout.version == int(payout.version),
                Payout.status.in_(list(from_statuses)),
            )
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            db.session.rollback()
            return False
        return True

    def process_payout(self, payout_id, *, actor_id: str | None = None) -> Payout:
        payout = self.get(payout_id)
        if payout.status == PayoutStatus.COMPLETED:
            return payout
        if payout.status not in PayoutStatus.STARTABLE:
            raise StateConflict(
                f"Payout cannot be processed while {payout.status}",
                details={"payout_id": int(payout.id), "status": payout.status},
            )

        items = list(payout.items or [])
        amount = sum(int(item.amount_minor or 0) for item in items)
        attempt_no = int(payout.attempt_count or 0) + 1
        previously_attempted = attempt_no > 1
        started_at = self.store.now()
        if not self._cas(
            payout,
            PayoutStatus.STARTABLE,
            {
                "status": PayoutStatus.PROCESSING,
                "amount_minor": amount,
                "attempt_count": attempt_no,
                "processing_started_at": started_at,
                "last_error": None,
            },
        ):
            raise StateConflict("Payout was picked up by another worker", details={"payout_id": int(payout_id)})
        attempt = PayoutAttempt(
            payout_id=int(payout.id),
            attempt_no=attempt_no,
            idempotency_key=f"payout:{int(payout.id)}:attempt:{attempt_no}",
            status="started",
            started_at=started_at,
        )
        db.session.add(attempt)
        log_event(
            "payout_processing",
            actor_id=actor_id,
            subject_type="payout",
            subject_id=payout.id,
            metadata={"attempt_no": attempt_no, "amount_minor": amount},
        )
        db.session.commit()
        payout = self.get(payout_id)
        reference = payout.transfer_reference_key

        if previously_attempted:
            try:
                found = self.gateway.find_transfer(reference)
            except ExternalDependencyError as exc:
                return self._mark_failed(payout, attempt, f"transfer_lookup_failed: {exc.message}")
            if found is not None:
                logger.info("payout_transfer_found_before_retry payout_id=%s ref=%s", payout.id, found.transfer_ref)
                return self._mark_completed(payout, attempt, found.transfer_ref)

        try:
            destination = self.catalog.get_shop_payout_destination(payout.shop_id)
        except ExternalDependencyError as exc:
            return self._mark_failed(payout, attempt, f"destination_lookup_failed: {exc.message}")
        if not destination:
            return self._mark_manual(payout, attempt, "seller has no payout destination")

        try:
            result = call_gateway(
                lambda: self.gateway.transfer(
                    destination_account=destination,
                    amount_minor=amount,
                    currency=payout.currency,
                    reference=reference,
                    idempotency_key=attempt.idempotency_key,
                ),
                attempts=self.config.gateway_retry_attempts,
                backoff_base=self.config.gateway_retry_backoff_seconds,
                label="transfer",
            )
        except GatewayTimeout as exc:
            return self._mark_in_flight(payout, attempt, exc.message)
        except ExternalDependencyError as exc:
            if exc.transient:
                return self._mark_failed(payout, attempt, exc.message)
            return self._mark_manual(payout, attempt, exc.message)
        return self._mark_completed(payout, attempt, result.transfer_ref)

    def _finish_attempt(self, attempt: PayoutAttempt, status: str, *, transfer_ref: str | None = None, error: str | None = None):
        attempt = db.session.get(PayoutAttempt, int(attempt.id))
        attempt.status = status
        attempt.transfer_reference = transfer_ref
        attempt.error = (error or "")[:2000] or None
        attempt.finished_at = self.store.now()
        db.session.add(attempt)

    def _mark_completed(self, payout: Payout, attempt: PayoutAttempt | None, transfer_ref: str) -> Payout:
        now = self.store.now()
        if not self._cas(
            payout,
            {PayoutStatus.PROCESSING},
            {"status": PayoutStatus.COMPLETED, "external_transfer_reference": transfer_ref, "completed_at": now},
        ):
            raise StateConflict("Payout changed while completing", details={"payout_id": int(payout.id)})
        order_ids = [int(item.order_id) for item in payout.items]
        stamped = (
            db.session.query(Order)
            .filter(
                Order.id.in_(order_ids),
                Order.payout_id.is_(None),
                Order.status == OrderStatus.COMPLETED,
            )
            .update(
                {"payout_id": int(payout.id), "version": Order.version + 1, "updated_at": now},
                synchronize_session=False,
            )
        )
        if stamped != len(order_ids):
            logger.error(
                "payout_order_stamp_mismatch payout_id=%s expected=%s stamped=%s",
                payout.id,
                len(order_ids),
                stamped,
            )
        if attempt is not None:
            self._finish_attempt(attempt, "succeeded", transfer_ref=transfer_ref)
        log_event(
            "payout_completed",
            subject_type="payout",
            subject_id=payout.id,
            idempotency_key=f"payout:{int(payout.id)}:completed",
            metadata={"transfer_ref": transfer_ref, "order_ids": order_ids},
        )
        db.session.commit()
        payout = self.get(payout.id)
        logger.info("payout_completed payout_id=%s transfer_ref=%s amount=%s", payout.id, transfer_ref, payout.amount_minor)
        self.notifier.notify(
            payout.seller_id,
            "payout_completed",
            {"payout_id": int(payout.id), "amount_minor": int(payout.amount_minor)},
        )
        return payout

    def _mark_failed(self, payout: Payout, attempt: PayoutAttempt | None, error: str) -> Payout:
        if not self._cas(payout, {PayoutStatus.PROCESSING}, {"status": PayoutStatus.FAILED, "last_error": error[:2000]}):
            raise StateConflict("Payout changed while recording failure", details={"payout_id": int(payout.id)})
        if attempt is not None:
            self._finish_attempt(attempt, "failed", error=error)
        log_event("payout_failed", subject_type="payout", subject_id=payout.id, severity="WARN", metadata={"error": error})
        db.session.commit()
        payout = self.get(payout.id)
        logger.warning("payout_failed payout_id=%s err=%s", payout.id, error)
        self.notifier.notify(payout.seller_id, "payout_failed", {"payout_id": int(payout.id)})
        return payout

    def _mark_manual(self, payout: Payout, attempt: PayoutAttempt | None, error: str) -> Payout:
        if not self._cas(
            payout,
            {PayoutStatus.PROCESSING},
            {"status": PayoutStatus.PENDING_MANUAL_TRANSFER, "last_error": error[:2000]},
        ):
            raise StateConflict("Payout changed while routing to manual transfer", details={"payout_id": int(payout.id)})
        if attempt is not None:
            self._finish_attempt(attempt, "rejected", error=error)
        db.session.commit()
        payout = self.get(payout.id)
        logger.error("payout_manual_transfer payout_id=%s err=%s", payout.id, error)
        self.review_queue.flag(
            ReviewKind.MANUAL_TRANSFER,
            subject_type="payout",
            subject_id=payout.id,
            details={"payout_id": int(payout.id), "seller_id": payout.seller_id, "error": error},
            dedupe_key=f"{ReviewKind.MANUAL_TRANSFER}:payout:{int(payout.id)}",
        )
        self.notifier.notify(payout.seller_id, "payout_failed", {"payout_id": int(payout.id), "manual": True})
        return payout

    def _mark_in_flight(self, payout: Payout, attempt: PayoutAttempt, error: str) -> Payout:
        # Outcome unknown: stay in processing until reconciliation asks the gateway.
        self._finish_attempt(attempt, "unknown", error=error)
        payout = self.get(payout.id)
        payout.last_error = error[:2000]
        db.session.commit()
        logger.warning("payout_outcome_unknown payout_id=%s err=%s", payout.id, error)
        return self.get(payout.id)

    def reconcile_processing_payouts(self, *, now: datetime | None = None, min_age_seconds: int = 60) -> dict:
        """Settle payouts stuck in ``processing`` by asking the gateway what happened."""
        now = now or self.store.now()
        cutoff = now - timedelta(seconds=max(0, int(min_age_seconds)))
        stuck = (
            Payout.query.filter(
                Payout.status == PayoutStatus.PROCESSING,
                Payout.processing_started_at <= cutoff,
            )
            .order_by(Payout.id.asc())
            .limit(int(self.config.sweep_batch_limit))
            .all()
        )
        summary = {"checked": 0, "completed": 0, "failed": 0, "unresolved": 0}
        for payout in stuck:
            summary["checked"] += 1
            try:
                found = self.gateway.find_transfer(payout.transfer_reference_key)
            except ExternalDependencyError as exc:
                logger.warning("payout_reconcile_lookup_failed payout_id=%s err=%s", payout.id, exc.message)
                summary["unresolved"] += 1
                continue
            try:
                if found is not None:
                    self._mark_completed(payout, None, found.transfer_ref)
                    summary["completed"] += 1
                else:
                    self._mark_failed(payout, None, "transfer not found at gateway during reconciliation")
                    summary["failed"] += 1
            except StateConflict as exc:
                logger.info("payout_reconcile_skipped payout_id=%s err=%s", payout.id, exc.message)
                summary["unresolved"] += 1
        logger.info("payout_reconcile_done %s", " ".join(f"{k}={v}" for k, v in summary.items()))
        return summary

    def run_sweep(self) -> SweepSummary:
        """Batch stragglers, then process every pending payout; failures do not stop the sweep."""
        summary = SweepSummary()
        summary.enqueued = self.enqueue_unbatched()
        pending_ids = [
            int(pid)
            for (pid,) in db.session.query(Payout.id)
            .filter(Payout.status == PayoutStatus.PENDING)
            .order_by(Payout.id.asc())
            .limit(int(self.config.sweep_batch_limit))
            .all()
        ]
        for pid in pending_ids:
            try:
                payout = self.process_payout(pid)
            except StateConflict as exc:
                summary.errors.append({"payout_id": pid, "error": exc.message})
                continue
            summary.processed += 1
            if payout.status == PayoutStatus.COMPLETED:
                summary.completed += 1
            elif payout.status == PayoutStatus.FAILED:
                summary.failed += 1
            elif payout.status == PayoutStatus.PENDING_MANUAL_TRANSFER:
                summary.manual += 1
            else:
                summary.in_flight += 1
        return summary

    # read models

    def seller_payouts(self, seller_id: str, *, limit: int = 100) -> list[Payout]:
        return (
            Payout.query.filter_by(seller_id=str(seller_id))
            .order_by(Payout.created_at.desc(), Payout.id.desc())
            .limit(max(1, min(int(limit), 500)))
            .all()
        )

    def seller_balance(self, seller_id: str) -> dict:
        sid = str(seller_id)

        def _sum(*criteria) -> int:
            total = db.session.query(func.coalesce(func.sum(Order.seller_amount_minor), 0)).filter(
                Order.seller_id == sid, *criteria
            ).scalar()
            return int(total or 0)

        escrowed = [
            OrderStatus.PAID,
            OrderStatus.AWAITING_DELIVERY,
            OrderStatus.AWAITING_CONFIRMATION,
            OrderStatus.DISPUTED,
            OrderStatus.DISPUTE_RESOLVED,
        ]
        return {
            "seller_id": sid,
            "pending_minor": _sum(Order.status.in_(escrowed)),
            "available_minor": _sum(Order.status == OrderStatus.COMPLETED, Order.payout_id.is_(None)),
            "paid_out_minor": _sum(Order.status == OrderStatus.COMPLETED, Order.payout_id.isnot(None)),
        }
