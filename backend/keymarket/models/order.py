from datetime import datetime
import json

from keymarket.extensions import db


class Order(db.Model):
    __tablename__ = "orders"
    __table_args__ = (
        db.CheckConstraint(
            "platform_fee_minor + seller_amount_minor = total_amount_minor",
            name="ck_orders_amount_split",
        ),
        db.CheckConstraint("total_amount_minor >= 0", name="ck_orders_total_non_negative"),
    )

    id = db.Column(db.Integer, primary_key=True)

    buyer_id = db.Column(db.String(64), nullable=False, index=True)
    seller_id = db.Column(db.String(64), nullable=False, index=True)
    shop_id = db.Column(db.String(64), nullable=False, index=True)

    currency = db.Column(db.String(8), nullable=False, default="thb")
    total_amount_minor = db.Column(db.Integer, nullable=False, default=0)
    platform_fee_minor = db.Column(db.Integer, nullable=False, default=0)
    seller_amount_minor = db.Column(db.Integer, nullable=False, default=0)
    refunded_amount_minor = db.Column(db.Integer, nullable=False, default=0)

    checkout_session_key = db.Column(db.String(128), nullable=True, unique=True)
    payment_intent_ref = db.Column(db.String(128), nullable=True, index=True)
    external_payment_reference = db.Column(db.String(128), nullable=True, unique=True)

    status = db.Column(db.String(32), nullable=False, default="payment_pending", index=True)

    delivery_payload = db.Column(db.Text, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    auto_confirm_deadline = db.Column(db.DateTime, nullable=True, index=True)
    buyer_confirmed_at = db.Column(db.DateTime, nullable=True)
    auto_confirmed = db.Column(db.Boolean, nullable=False, default=False)
    paid_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)

    dispute_id = db.Column(db.Integer, nullable=True, index=True)
    payout_id = db.Column(db.Integer, nullable=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    version = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy="selectin",
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )

    def remaining_seconds(self, now: datetime | None = None) -> int | None:
        if self.status != "awaiting_confirmation" or self.auto_confirm_deadline is None:
            return None
        ref = now or datetime.utcnow()
        return max(0, int((self.auto_confirm_deadline - ref).total_seconds()))

    def to_dict(self, *, include_delivery: bool = False, now: datetime | None = None) -> dict:
        data = {
            "id": int(self.id),
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "shop_id": self.shop_id,
            "currency": self.currency or "",
            "items": [item.to_dict() for item in (self.items or [])],
            "total_amount_minor": int(self.total_amount_minor or 0),
            "platform_fee_minor": int(self.platform_fee_minor or 0),
            "seller_amount_minor": int(self.seller_amount_minor or 0),
            "refunded_amount_minor": int(self.refunded_amount_minor or 0),
            "external_payment_reference": self.external_payment_reference or "",
            "status": self.status or "",
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "auto_confirm_deadline": self.auto_confirm_deadline.isoformat() if self.auto_confirm_deadline else None,
            "remaining_seconds": self.remaining_seconds(now),
            "buyer_confirmed_at": self.buyer_confirmed_at.isoformat() if self.buyer_confirmed_at else None,
            "auto_confirmed": bool(self.auto_confirmed),
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
            "dispute_id": int(self.dispute_id) if self.dispute_id is not None else None,
            "payout_id": int(self.payout_id) if self.payout_id is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "version": int(self.version or 0),
        }
        if include_delivery:
            data["delivery"] = self.delivery_dict()
        return data

    def delivery_dict(self) -> dict | None:
        raw = self.delivery_payload
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return parsed
        except Exception:
            pass
        return {"raw": str(raw)}


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_ref = db.Column(db.String(128), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price_minor = db.Column(db.Integer, nullable=False, default=0)

    @property
    def line_total_minor(self) -> int:
        return int(self.quantity or 0) * int(self.unit_price_minor or 0)

    def to_dict(self) -> dict:
        return {
            "product_ref": self.product_ref,
            "quantity": int(self.quantity or 0),
            "unit_price_minor": int(self.unit_price_minor or 0),
            "line_total_minor": self.line_total_minor,
        }
