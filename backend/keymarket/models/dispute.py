from datetime import datetime
import json

from keymarket.extensions import db


class Dispute(db.Model):
    __tablename__ = "disputes"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    # Mirrors order_id while the dispute is unresolved; the unique index keeps
    # a single live dispute per order even under concurrent inserts.
    open_order_id = db.Column(db.Integer, nullable=True, unique=True)

    buyer_id = db.Column(db.String(64), nullable=False, index=True)
    seller_id = db.Column(db.String(64), nullable=False, index=True)

    category = db.Column(db.String(32), nullable=False)
    subject = db.Column(db.String(200), nullable=False, default="")
    description = db.Column(db.Text, nullable=True)
    evidence_json = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(32), nullable=False, default="open", index=True)

    seller_action = db.Column(db.String(32), nullable=True)
    seller_note = db.Column(db.Text, nullable=True)
    seller_responded_at = db.Column(db.DateTime, nullable=True)

    # Set before the refund call so a retry after a lost response repeats the same refund.
    pending_refund_action = db.Column(db.String(32), nullable=True)
    pending_refund_minor = db.Column(db.Integer, nullable=True)

    resolution_action = db.Column(db.String(32), nullable=True)
    resolution_note = db.Column(db.Text, nullable=True)
    resolution_refund_minor = db.Column(db.Integer, nullable=True)
    resolved_by = db.Column(db.String(64), nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def evidence(self) -> list:
        raw = self.evidence_json
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except Exception:
            return []
        return list(parsed) if isinstance(parsed, list) else []

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "category": self.category or "",
            "subject": self.subject or "",
            "description": self.description or "",
            "evidence": self.evidence(),
            "status": self.status or "",
            "seller_action": self.seller_action or "",
            "seller_note": self.seller_note or "",
            "seller_responded_at": self.seller_responded_at.isoformat() if self.seller_responded_at else None,
            "pending_refund_action": self.pending_refund_action or "",
            "pending_refund_minor": int(self.pending_refund_minor) if self.pending_refund_minor is not None else None,
            "resolution_action": self.resolution_action or "",
            "resolution_note": self.resolution_note or "",
            "resolution_refund_minor": (
                int(self.resolution_refund_minor) if self.resolution_refund_minor is not None else None
            ),
            "resolved_by": self.resolved_by or "",
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "last_error": self.last_error or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
