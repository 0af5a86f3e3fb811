from datetime import datetime
import json

from keymarket.extensions import db


class ReviewQueueItem(db.Model):
    __tablename__ = "review_queue_items"

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(48), nullable=False, index=True)
    subject_type = db.Column(db.String(32), nullable=False, default="order")
    subject_id = db.Column(db.String(128), nullable=True, index=True)
    # Keeps repeated deliveries of the same bad confirmation from flooding the queue.
    dedupe_key = db.Column(db.String(200), nullable=True, unique=True)
    details_json = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="open", index=True)
    resolution_note = db.Column(db.Text, nullable=True)
    resolved_by = db.Column(db.String(64), nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def details(self) -> dict:
        raw = self.details_json
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return parsed
        except Exception:
            pass
        return {"raw": str(raw)}

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "kind": self.kind or "",
            "subject_type": self.subject_type or "",
            "subject_id": self.subject_id or "",
            "details": self.details(),
            "status": self.status or "",
            "resolution_note": self.resolution_note or "",
            "resolved_by": self.resolved_by or "",
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
