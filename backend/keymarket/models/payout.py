from datetime import datetime

from keymarket.extensions import db


class Payout(db.Model):
    __tablename__ = "payouts"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.String(64), nullable=False, index=True)
    shop_id = db.Column(db.String(64), nullable=False, index=True)
    currency = db.Column(db.String(8), nullable=False, default="thb")
    amount_minor = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(32), nullable=False, default="pending", index=True)
    destination_account = db.Column(db.String(128), nullable=True)
    external_transfer_reference = db.Column(db.String(128), nullable=True, unique=True)
    attempt_count = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)

    processing_started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    version = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship("PayoutItem", backref="payout", lazy="selectin", order_by="PayoutItem.id")
    attempts = db.relationship("PayoutAttempt", backref="payout", lazy="selectin", order_by="PayoutAttempt.attempt_no")

    @property
    def transfer_reference_key(self) -> str:
        return f"payout:{int(self.id)}"

    def order_ids(self) -> list[int]:
        return [int(item.order_id) for item in (self.items or [])]

    def to_dict(self, *, include_attempts: bool = False) -> dict:
        data = {
            "id": int(self.id),
            "seller_id": self.seller_id,
            "shop_id": self.shop_id,
            "currency": self.currency or "",
            "amount_minor": int(self.amount_minor or 0),
            "order_ids": self.order_ids(),
            "status": self.status or "",
            "external_transfer_reference": self.external_transfer_reference or "",
            "attempt_count": int(self.attempt_count or 0),
            "last_error": self.last_error or "",
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_attempts:
            data["attempts"] = [a.to_dict() for a in (self.attempts or [])]
        return data


class PayoutItem(db.Model):
    __tablename__ = "payout_items"

    id = db.Column(db.Integer, primary_key=True)
    payout_id = db.Column(db.Integer, db.ForeignKey("payouts.id"), nullable=False, index=True)
    # An order is enqueued into exactly one payout, ever.
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True)
    amount_minor = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "payout_id": int(self.payout_id),
            "order_id": int(self.order_id),
            "amount_minor": int(self.amount_minor or 0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class PayoutAttempt(db.Model):
    __tablename__ = "payout_attempts"
    __table_args__ = (
        db.UniqueConstraint("payout_id", "attempt_no", name="uq_payout_attempt_no"),
    )

    id = db.Column(db.Integer, primary_key=True)
    payout_id = db.Column(db.Integer, db.ForeignKey("payouts.id"), nullable=False, index=True)
    attempt_no = db.Column(db.Integer, nullable=False, default=1)
    idempotency_key = db.Column(db.String(160), nullable=False)
    status = db.Column(db.String(32), nullable=False, default="started")
    transfer_reference = db.Column(db.String(128), nullable=True)
    error = db.Column(db.Text, nullable=True)
    started_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    finished_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "attempt_no": int(self.attempt_no or 0),
            "idempotency_key": self.idempotency_key or "",
            "status": self.status or "",
            "transfer_reference": self.transfer_reference or "",
            "error": self.error or "",
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
