from __future__ import annotations

from flask import Blueprint, jsonify, request

from keymarket.errors import Forbidden, ValidationError
from keymarket.extensions import db
from keymarket.models import Order
from keymarket.services.engine import get_engine
from keymarket.utils.auth import current_caller, json_body
from keymarket.utils.idempotency import lookup_response, release_key, store_response

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


def _can_view(caller, order: Order) -> bool:
    return caller.is_admin or caller.user_id in (order.buyer_id, order.seller_id)


def _order_payload(caller, order: Order) -> dict:
    # Delivered codes go to the order's buyer and seller and to admins, never to other callers.
    include_delivery = caller.is_admin or caller.user_id in (order.buyer_id, order.seller_id)
    return order.to_dict(include_delivery=include_delivery, now=get_engine().store.now())


@orders_bp.post("/orders")
def create_order():
    caller = current_caller()
    payload = json_body()
    scope = "create_order"
    state, row_or_body, status = lookup_response(caller.user_id, scope, payload)
    if state in ("hit", "conflict"):
        return jsonify(row_or_body), status

    try:
        result = get_engine().create_order(
            buyer_id=caller.user_id,
            shop_id=payload.get("shop_id"),
            items=payload.get("items"),
            checkout_session_key=payload.get("checkout_session_key"),
            currency=payload.get("currency"),
        )
    except Exception:
        if state == "miss":
            db.session.rollback()
            release_key(row_or_body)
        raise

    body = {
        "ok": True,
        "created": bool(result.created),
        "order": _order_payload(caller, result.order),
    }
    if result.intent is not None:
        body["payment"] = {
            "intent_ref": result.intent.intent_ref,
            "client_secret": result.intent.client_secret,
            "status": result.intent.status,
        }
    code = 201 if result.created else 200
    if state == "miss":
        store_response(row_or_body, body, code)
    return jsonify(body), code


@orders_bp.get("/orders")
def list_orders():
    caller = current_caller()
    role = (request.args.get("as") or "buyer").strip().lower()
    q = Order.query
    if role == "seller":
        q = q.filter(Order.seller_id == caller.user_id)
    elif role == "buyer":
        q = q.filter(Order.buyer_id == caller.user_id)
    else:
        raise ValidationError("as must be buyer or seller")
    status = (request.args.get("status") or "").strip().lower()
    if status:
        q = q.filter(Order.status == status)
    rows = q.order_by(Order.created_at.desc(), Order.id.desc()).limit(200).all()
    now = get_engine().store.now()
    return jsonify({"ok": True, "items": [o.to_dict(now=now) for o in rows]}), 200


@orders_bp.get("/orders/<int:order_id>")
def get_order(order_id: int):
    caller = current_caller()
    order = get_engine().get_order(order_id)
    if not _can_view(caller, order):
        raise Forbidden("You do not have access to this order")
    return jsonify({"ok": True, "order": _order_payload(caller, order)}), 200


@orders_bp.get("/orders/<int:order_id>/timeline")
def order_timeline(order_id: int):
    caller = current_caller()
    engine = get_engine()
    order = engine.get_order(order_id)
    if not _can_view(caller, order):
        raise Forbidden("You do not have access to this order")
    rows = engine.store.timeline(order_id)
    return jsonify({"ok": True, "order_id": order_id, "items": [r.to_dict() for r in rows]}), 200


@orders_bp.post("/orders/<int:order_id>/delivery")
def record_delivery(order_id: int):
    caller = current_caller()
    payload = json_body()
    order = get_engine().record_delivery(
        seller_id=caller.user_id,
        order_id=order_id,
        payload=payload.get("delivery") if "delivery" in payload else payload,
    )
    return jsonify({"ok": True, "order": _order_payload(caller, order)}), 200


@orders_bp.post("/orders/<int:order_id>/confirm")
def confirm_receipt(order_id: int):
    caller = current_caller()
    order = get_engine().confirm_receipt(buyer_id=caller.user_id, order_id=order_id)
    return jsonify({"ok": True, "order": _order_payload(caller, order)}), 200


@orders_bp.post("/orders/<int:order_id>/cancel")
def cancel_order(order_id: int):
    caller = current_caller()
    order = get_engine().cancel_order(buyer_id=caller.user_id, order_id=order_id)
    return jsonify({"ok": True, "order": _order_payload(caller, order)}), 200


@orders_bp.post("/payments/confirm")
def confirm_payment():
    current_caller()
    payload = json_body()
    ref = str(payload.get("external_reference") or "").strip()
    if not ref:
        raise ValidationError("external_reference is required")
    result = get_engine().confirm_payment(ref)
    return jsonify({"ok": True, **result.to_dict()}), 200
