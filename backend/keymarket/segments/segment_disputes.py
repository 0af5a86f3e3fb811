from __future__ import annotations

from flask import Blueprint, jsonify, request

from keymarket.errors import Forbidden, ValidationError
from keymarket.services.engine import get_engine
from keymarket.utils.auth import current_caller, json_body

disputes_bp = Blueprint("disputes_bp", __name__, url_prefix="/api/disputes")


@disputes_bp.post("")
def open_dispute():
    caller = current_caller()
    payload = json_body()
    dispute = get_engine().open_dispute(
        buyer_id=caller.user_id,
        order_id=payload.get("order_id"),
        category=payload.get("category"),
        subject=payload.get("subject"),
        description=payload.get("description") or "",
        evidence=payload.get("evidence") or [],
    )
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 201


@disputes_bp.get("")
def list_disputes():
    caller = current_caller()
    role = (request.args.get("as") or "buyer").strip().lower()
    workflow = get_engine().disputes
    if role == "buyer":
        rows = workflow.list_for_buyer(caller.user_id)
    elif role == "seller":
        rows = workflow.list_for_seller(caller.user_id)
    else:
        raise ValidationError("as must be buyer or seller")
    return jsonify({"ok": True, "items": [d.to_dict() for d in rows]}), 200


@disputes_bp.get("/<int:dispute_id>")
def get_dispute(dispute_id: int):
    caller = current_caller()
    dispute = get_engine().disputes.get(dispute_id)
    if not (caller.is_admin or caller.user_id in (dispute.buyer_id, dispute.seller_id)):
        raise Forbidden("You do not have access to this dispute")
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 200


@disputes_bp.post("/<int:dispute_id>/respond")
def seller_respond(dispute_id: int):
    caller = current_caller()
    payload = json_body()
    dispute = get_engine().seller_respond_to_dispute(
        seller_id=caller.user_id,
        dispute_id=dispute_id,
        action=payload.get("action"),
        note=payload.get("note") or "",
        new_delivery_payload=payload.get("delivery"),
        refund_amount_minor=payload.get("refund_amount_minor"),
    )
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 200


@disputes_bp.post("/<int:dispute_id>/resolve")
def admin_resolve(dispute_id: int):
    caller = current_caller()
    if not caller.is_admin:
        raise Forbidden("Admin access required")
    payload = json_body()
    dispute = get_engine().admin_resolve_dispute(
        admin_id=caller.user_id,
        dispute_id=dispute_id,
        action=payload.get("action"),
        note=payload.get("note") or "",
        new_delivery_payload=payload.get("delivery"),
        refund_amount_minor=payload.get("refund_amount_minor"),
    )
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 200
