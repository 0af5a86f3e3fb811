from __future__ import annotations

from flask import Blueprint, jsonify

from keymarket.errors import Forbidden
from keymarket.services.engine import get_engine
from keymarket.utils.auth import current_caller

payouts_bp = Blueprint("payouts_bp", __name__, url_prefix="/api/sellers")


def _require_self_or_admin(seller_id: str):
    caller = current_caller()
    if not (caller.is_admin or caller.user_id == str(seller_id)):
        raise Forbidden("Sellers can only view their own payouts")
    return caller


@payouts_bp.get("/<seller_id>/payouts")
def seller_payouts(seller_id: str):
    _require_self_or_admin(seller_id)
    rows = get_engine().get_seller_payouts(seller_id)
    return jsonify({"ok": True, "items": [p.to_dict(include_attempts=True) for p in rows]}), 200


@payouts_bp.get("/<seller_id>/balance")
def seller_balance(seller_id: str):
    _require_self_or_admin(seller_id)
    return jsonify({"ok": True, "balance": get_engine().payouts.seller_balance(seller_id)}), 200
