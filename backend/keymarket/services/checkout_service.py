from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from keymarket.errors import ExternalDependencyError, Forbidden, NotFound, StateConflict, ValidationError
from keymarket.extensions import db
from keymarket.integrations.payments.base import IntentResult
from keymarket.models import Order, OrderItem, OrderTransition
from keymarket.services.order_store import OrderStatus
from keymarket.utils.commission import split_total_minor
from keymarket.utils.events import log_event
from keymarket.utils.retry import call_gateway

logger = logging.getLogger(__name__)

MAX_ITEMS = 50
MAX_QUANTITY = 1000


@dataclass
class CheckoutResult:
    order: Order
    created: bool
    intent: IntentResult | None = None


def _parse_items(items) -> list[dict]:
    if not isinstance(items, list) or not items:
        raise ValidationError("At least one item is required")
    if len(items) > MAX_ITEMS:
        raise ValidationError(f"An order may contain at most {MAX_ITEMS} items")
    parsed = []
    for idx, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError("Each item must be an object", details={"index": idx})
        product_ref = str(raw.get("product_ref") or "").strip()
        if not product_ref:
            raise ValidationError("Item product_ref is required", details={"index": idx})
        try:
            quantity = int(raw.get("quantity"))
            unit_price = int(raw.get("unit_price_minor"))
        except (TypeError, ValueError):
            raise ValidationError("Item quantity and unit_price_minor must be integers", details={"index": idx})
        if quantity <= 0 or quantity > MAX_QUANTITY:
            raise ValidationError("Item quantity must be between 1 and 1000", details={"index": idx})
        if unit_price < 0:
            raise ValidationError("Item unit_price_minor must not be negative", details={"index": idx})
        parsed.append({"product_ref": product_ref[:128], "quantity": quantity, "unit_price_minor": unit_price})
    return parsed


class CheckoutService:
    """Creates orders in ``payment_pending`` and the matching payment intent."""

    def __init__(self, config, store, gateway, catalog):
        self.config = config
        self.store = store
        self.gateway = gateway
        self.catalog = catalog

    def create_order(
        self,
        *,
        buyer_id: str,
        shop_id: str,
        items,
        checkout_session_key: str,
        currency: str | None = None,
    ) -> CheckoutResult:
        buyer_id = str(buyer_id or "").strip()
        shop_id = str(shop_id or "").strip()
        session_key = str(checkout_session_key or "").strip()
        if not buyer_id:
            raise ValidationError("buyer_id is required")
        if not shop_id:
            raise ValidationError("shop_id is required")
        if not session_key or len(session_key) > 128:
            raise ValidationError("checkout_session_key is required (max 128 chars)")
        parsed = _parse_items(items)

        existing = self.store.find_by_checkout_session(session_key)
        if existing is not None:
            return self._resume(existing, buyer_id)

        seller_id = self.catalog.get_shop_owner(shop_id)
        if not seller_id:
            raise NotFound("Shop not found", details={"shop_id": shop_id})
        if str(seller_id) == buyer_id:
            raise ValidationError("Sellers cannot buy from their own shop")

        total = sum(row["quantity"] * row["unit_price_minor"] for row in parsed)
        if total <= 0:
            raise ValidationError("Order total must be greater than zero")
        fee, seller_amount = split_total_minor(total, self.config.platform_fee_bps)

        now = self.store.now()
        order = Order(
            buyer_id=buyer_id[:64],
            seller_id=str(seller_id)[:64],
            shop_id=shop_id[:64],
            currency=(currency or self.config.currency).strip().lower()[:8],
            total_amount_minor=total,
            platform_fee_minor=fee,
            seller_amount_minor=seller_amount,
            checkout_session_key=session_key,
            status=OrderStatus.PAYMENT_PENDING,
            created_at=now,
            updated_at=now,
            version=1,
        )
        order.items = [OrderItem(**row) for row in parsed]
        db.session.add(order)
        try:
            db.session.flush()
            db.session.add(
                OrderTransition(
                    order_id=int(order.id),
                    from_status="",
                    to_status=OrderStatus.PAYMENT_PENDING,
                    from_version=0,
                    to_version=1,
                    actor_type="buyer",
                    actor_id=buyer_id[:64],
                    reason="checkout",
                    created_at=now,
                )
            )
            log_event(
                "order_created",
                actor_id=buyer_id,
                subject_type="order",
                subject_id=order.id,
                idempotency_key=f"order:{int(order.id)}:created",
                metadata={"total_amount_minor": total, "platform_fee_minor": fee, "shop_id": shop_id},
            )
            db.session.commit()
        except IntegrityError:
            # Lost a race with a retried checkout using the same session key.
            db.session.rollback()
            existing = self.store.find_by_checkout_session(session_key)
            if existing is None:
                raise
            return self._resume(existing, buyer_id)

        logger.info(
            "order_created order_id=%s buyer_id=%s seller_id=%s total=%s fee=%s",
            order.id,
            buyer_id,
            seller_id,
            total,
            fee,
        )
        intent = self._ensure_intent(order)
        return CheckoutResult(order=order, created=True, intent=intent)

    def _resume(self, order: Order, buyer_id: str) -> CheckoutResult:
        if order.buyer_id != buyer_id:
            raise Forbidden("Checkout session belongs to another buyer")
        intent = None
        if order.status == OrderStatus.PAYMENT_PENDING and not order.payment_intent_ref:
            intent = self._ensure_intent(order)
        return CheckoutResult(order=order, created=False, intent=intent)

    def _ensure_intent(self, order: Order) -> IntentResult:
        destination = None
        try:
            destination = self.catalog.get_shop_payout_destination(order.shop_id)
        except ExternalDependencyError as exc:
            logger.warning("intent_destination_lookup_failed order_id=%s err=%s", order.id, exc.message)
        intent = call_gateway(
            lambda: self.gateway.create_intent(
                amount_minor=int(order.total_amount_minor),
                currency=order.currency,
                destination_account=destination,
                metadata={
                    "order_id": int(order.id),
                    "buyer_id": order.buyer_id,
                    "checkout_session_key": order.checkout_session_key,
                },
                idempotency_key=f"order:{int(order.id)}:intent",
            ),
            attempts=self.config.gateway_retry_attempts,
            backoff_base=self.config.gateway_retry_backoff_seconds,
            label="create_intent",
        )
        updated = (
            db.session.query(Order)
            .filter(Order.id == int(order.id), Order.payment_intent_ref.is_(None))
            .update({"payment_intent_ref": intent.intent_ref}, synchronize_session=False)
        )
        db.session.commit()
        db.session.expire(order)
        if updated != 1 and order.payment_intent_ref != intent.intent_ref:
            raise StateConflict("Order already has a different payment intent", details={"order_id": int(order.id)})
        return intent
