from __future__ import annotations

from flask import Blueprint, jsonify, request

from keymarket.models import JobRun
from keymarket.services.engine import get_engine
from keymarket.utils.auth import json_body, require_admin

admin_bp = Blueprint("admin_bp", __name__, url_prefix="/api/admin")


@admin_bp.get("/review-items")
def list_review_items():
    require_admin()
    status = (request.args.get("status") or "open").strip().lower()
    kind = (request.args.get("kind") or "").strip().lower() or None
    rows = get_engine().review_queue.list_items(status=None if status == "all" else status, kind=kind)
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@admin_bp.post("/review-items/<int:item_id>/resolve")
def resolve_review_item(item_id: int):
    caller = require_admin()
    payload = json_body()
    item = get_engine().review_queue.resolve(item_id, admin_id=caller.user_id, note=payload.get("note") or "")
    return jsonify({"ok": True, "item": item.to_dict()}), 200


@admin_bp.get("/disputes/escalated")
def escalated_disputes():
    require_admin()
    rows = get_engine().disputes.list_escalated()
    return jsonify({"ok": True, "items": [d.to_dict() for d in rows]}), 200


@admin_bp.post("/orders/<int:order_id>/sync-payment")
def sync_payment(order_id: int):
    require_admin()
    result = get_engine().reconciler.sync_payment_status(order_id)
    return jsonify({"ok": True, **result.to_dict()}), 200


@admin_bp.post("/payouts/<int:payout_id>/retry")
def retry_payout(payout_id: int):
    caller = require_admin()
    payout = get_engine().payouts.process_payout(payout_id, actor_id=caller.user_id)
    return jsonify({"ok": True, "payout": payout.to_dict(include_attempts=True)}), 200


@admin_bp.post("/jobs/auto-confirm")
def trigger_auto_confirm():
    require_admin()
    return jsonify({"ok": True, "result": get_engine().run_auto_confirm_sweep()}), 200


@admin_bp.post("/jobs/payout-sweep")
def trigger_payout_sweep():
    require_admin()
    return jsonify({"ok": True, "result": get_engine().run_payout_sweep()}), 200


@admin_bp.post("/jobs/payout-reconcile")
def trigger_payout_reconcile():
    require_admin()
    payload = json_body()
    min_age = int(payload.get("min_age_seconds") or 60)
    return jsonify({"ok": True, "result": get_engine().reconcile_payouts(min_age_seconds=min_age)}), 200


@admin_bp.get("/job-runs")
def job_runs():
    require_admin()
    rows = JobRun.query.order_by(JobRun.ran_at.desc(), JobRun.id.desc()).limit(50).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200
