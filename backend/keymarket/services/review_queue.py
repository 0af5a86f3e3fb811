from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from keymarket.errors import NotFound, StateConflict, ValidationError
from keymarket.extensions import db
from keymarket.models import ReviewQueueItem
from keymarket.utils.events import log_event

logger = logging.getLogger(__name__)


class ReviewKind:
    AMOUNT_MISMATCH = "amount_mismatch"
    BUYER_MISMATCH = "buyer_mismatch"
    ORPHAN_PAYMENT = "orphan_payment"
    PAYMENT_AFTER_CLOSE = "payment_after_close"
    DUPLICATE_PAYMENT = "duplicate_payment"
    REFUND_FAILED = "refund_failed"
    REFUND_AMOUNT_MISMATCH = "refund_amount_mismatch"
    MANUAL_TRANSFER = "pending_manual_transfer"


class ReviewQueue:
    """Operator-visible queue for inconsistencies the engine refuses to auto-correct."""

    def __init__(self, notifier=None, *, clock=None):
        self.notifier = notifier
        self.clock = clock or datetime.utcnow

    def flag(
        self,
        kind: str,
        *,
        subject_type: str,
        subject_id,
        details: dict | None = None,
        dedupe_key: str | None = None,
    ) -> ReviewQueueItem:
        """Persist and commit a review item; repeated flags with one dedupe key return the first."""
        key = (dedupe_key or "").strip()[:200] or None
        if key:
            existing = ReviewQueueItem.query.filter_by(dedupe_key=key).first()
            if existing:
                return existing
        item = ReviewQueueItem(
            kind=kind,
            subject_type=subject_type,
            subject_id=str(subject_id)[:128] if subject_id is not None else None,
            dedupe_key=key,
            details_json=json.dumps(details or {}, default=str),
            status="open",
            created_at=self.clock(),
        )
        db.session.add(item)
        try:
            db.session.flush()
            log_event(
                "review_item_opened",
                subject_type=subject_type,
                subject_id=subject_id,
                severity="WARN",
                metadata={"kind": kind, "review_item_id": int(item.id)},
            )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            existing = ReviewQueueItem.query.filter_by(dedupe_key=key).first() if key else None
            if existing is None:
                raise
            return existing
        logger.warning(
            "review_item_opened id=%s kind=%s subject=%s:%s",
            item.id,
            kind,
            subject_type,
            subject_id,
        )
        if self.notifier is not None:
            self.notifier.notify_admins("review_item_opened", {"review_item_id": int(item.id), "kind": kind})
        return item

    def list_items(self, *, status: str | None = "open", kind: str | None = None, limit: int = 100) -> list[ReviewQueueItem]:
        q = ReviewQueueItem.query
        if status:
            q = q.filter(ReviewQueueItem.status == status)
        if kind:
            q = q.filter(ReviewQueueItem.kind == kind)
        return q.order_by(ReviewQueueItem.created_at.asc(), ReviewQueueItem.id.asc()).limit(max(1, min(int(limit), 500))).all()

    def resolve(self, item_id, *, admin_id: str, note: str) -> ReviewQueueItem:
        note = (note or "").strip()
        if not note:
            raise ValidationError("A resolution note is required")
        item = db.session.get(ReviewQueueItem, int(item_id))
        if item is None:
            raise NotFound("Review item not found")
        if item.status != "open":
            raise StateConflict("Review item is already resolved", details={"review_item_id": int(item.id)})
        item.status = "resolved"
        item.resolution_note = note[:2000]
        item.resolved_by = str(admin_id)[:64]
        item.resolved_at = self.clock()
        log_event(
            "review_item_resolved",
            actor_id=admin_id,
            subject_type=item.subject_type,
            subject_id=item.subject_id,
            metadata={"review_item_id": int(item.id), "kind": item.kind},
        )
        db.session.commit()
        return item
