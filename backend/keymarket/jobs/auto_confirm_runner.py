from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import exists

from keymarket.errors import EscrowError, VersionConflict
from keymarket.extensions import db
from keymarket.models import Dispute, Order
from keymarket.services.order_store import OrderStatus
from keymarket.utils.events import log_event
from keymarket.utils.job_runs import record_job_run
from keymarket.utils.retry import run_with_retry

logger = logging.getLogger(__name__)

JOB_NAME = "auto_confirm_sweep"


class AutoConfirmScheduler:
    """Completes delivered orders whose confirmation window ran out.

    Each order is its own conditional write (status, version, deadline and
    dispute absence checked together), so the sweep can be re-run, run twice
    at once, or stopped between orders without leaving anything half-moved.
    """

    def __init__(self, config, store, payouts, notifier):
        self.config = config
        self.store = store
        self.payouts = payouts
        self.notifier = notifier

    def find_candidates(self, *, now: datetime, limit: int | None = None) -> list[tuple[int, int]]:
        rows = (
            db.session.query(Order.id, Order.version)
            .filter(
                Order.status == OrderStatus.AWAITING_CONFIRMATION,
                Order.auto_confirm_deadline.isnot(None),
                Order.auto_confirm_deadline <= now,
                Order.dispute_id.is_(None),
            )
            .order_by(Order.auto_confirm_deadline.asc(), Order.id.asc())
            .limit(int(limit or self.config.sweep_batch_limit))
            .all()
        )
        return [(int(oid), int(version)) for oid, version in rows]

    @staticmethod
    def _eligible(order: Order, now: datetime) -> bool:
        return (
            order.status == OrderStatus.AWAITING_CONFIRMATION
            and order.dispute_id is None
            and order.auto_confirm_deadline is not None
            and order.auto_confirm_deadline <= now
        )

    def confirm_candidate(self, order_id: int, version: int | None, *, now: datetime) -> bool:
        """Try to auto-complete one order; False when someone else already decided it."""
        expected = {"version": version}

        def _attempt() -> bool:
            order = self.store.get(order_id)
            if not self._eligible(order, now):
                return False
            self.store.transition(
                order,
                OrderStatus.COMPLETED,
                actor_type="scheduler",
                reason="auto_confirmed",
                changes={"auto_confirmed": True, "completed_at": now},
                conditions=(
                    Order.auto_confirm_deadline <= now,
                    Order.dispute_id.is_(None),
                    ~exists().where(Dispute.open_order_id == Order.id),
                ),
                expected_version=expected.pop("version", None),
                commit=False,
            )
            log_event(
                "order_auto_confirmed",
                subject_type="order",
                subject_id=order_id,
                idempotency_key=f"order:{int(order_id)}:completed",
                metadata={"by": "scheduler"},
            )
            db.session.commit()
            return True

        try:
            return bool(
                run_with_retry(
                    _attempt,
                    attempts=self.config.conflict_retry_attempts,
                    backoff_base=self.config.conflict_retry_backoff_seconds,
                    label=f"auto_confirm:{order_id}",
                )
            )
        except VersionConflict:
            return False

    def process_candidates(self, candidates, *, now: datetime) -> dict:
        summary = {"candidates": 0, "completed": 0, "skipped": 0, "errors": 0}
        for order_id, version in candidates:
            summary["candidates"] += 1
            try:
                completed = self.confirm_candidate(order_id, version, now=now)
            except Exception as exc:
                db.session.rollback()
                summary["errors"] += 1
                logger.exception("auto_confirm_failed order_id=%s err=%s", order_id, exc)
                continue
            if not completed:
                summary["skipped"] += 1
                logger.info("auto_confirm_skipped order_id=%s", order_id)
                continue
            summary["completed"] += 1
            self._after_completion(order_id)
        return summary

    def _after_completion(self, order_id: int) -> None:
        try:
            self.payouts.enqueue_for_payout(order_id)
        except EscrowError as exc:
            # The payout sweep picks up completed orders that were never batched.
            db.session.rollback()
            logger.warning("auto_confirm_enqueue_deferred order_id=%s err=%s", order_id, exc.message)
        order = self.store.get(order_id)
        payload = {"order_id": int(order.id), "seller_amount_minor": int(order.seller_amount_minor)}
        self.notifier.notify_many([order.buyer_id, order.seller_id], "order_auto_confirmed", payload)

    def run(self, *, now: datetime | None = None, limit: int | None = None) -> dict:
        started_at = datetime.utcnow()
        now = now or self.store.now()
        try:
            candidates = self.find_candidates(now=now, limit=limit)
            summary = self.process_candidates(candidates, now=now)
        except Exception as exc:
            db.session.rollback()
            record_job_run(job_name=JOB_NAME, ok=False, started_at=started_at, error=str(exc))
            raise
        summary.update({"ok": summary["errors"] == 0, "ts": now.isoformat()})
        record_job_run(
            job_name=JOB_NAME,
            ok=summary["errors"] == 0,
            started_at=started_at,
            error=None if summary["errors"] == 0 else f"errors={summary['errors']}",
            summary=summary,
        )
        logger.info(
            "auto_confirm_sweep_done candidates=%s completed=%s skipped=%s errors=%s",
            summary["candidates"],
            summary["completed"],
            summary["skipped"],
            summary["errors"],
        )
        return summary
