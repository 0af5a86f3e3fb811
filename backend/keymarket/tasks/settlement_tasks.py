from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from keymarket.extensions import db
from keymarket.services.engine import get_engine


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


def _retry_or_raise(task, task_name: str, exc: Exception, *, started: float, trace_id: str, **extra):
    if int(task.request.retries or 0) < int(task.max_retries or 0):
        countdown = _retry_countdown(int(task.request.retries or 0))
        _task_log(task_name, status="retrying", started_at=started, trace_id=trace_id, detail=str(exc), countdown=countdown, **extra)
        raise task.retry(exc=exc, countdown=countdown)
    _task_log(task_name, status="failed", started_at=started, trace_id=trace_id, detail=str(exc), **extra)
    raise exc


@shared_task(bind=True, name="keymarket.tasks.settlement_tasks.run_auto_confirm_sweep", max_retries=3)
def run_auto_confirm_sweep(self, *, trace_id: str = ""):
    started = time.perf_counter()
    try:
        result = get_engine().run_auto_confirm_sweep()
    except Exception as exc:
        db.session.rollback()
        _retry_or_raise(self, "run_auto_confirm_sweep", exc, started=started, trace_id=trace_id)
    _task_log(
        "run_auto_confirm_sweep",
        status="ok" if result.get("ok") else "partial",
        started_at=started,
        trace_id=trace_id,
        completed=result.get("completed"),
        errors=result.get("errors"),
    )
    return result


@shared_task(bind=True, name="keymarket.tasks.settlement_tasks.run_payout_sweep", max_retries=3)
def run_payout_sweep(self, *, trace_id: str = ""):
    started = time.perf_counter()
    try:
        result = get_engine().run_payout_sweep()
    except Exception as exc:
        db.session.rollback()
        _retry_or_raise(self, "run_payout_sweep", exc, started=started, trace_id=trace_id)
    _task_log(
        "run_payout_sweep",
        status="ok" if result.get("ok") else "partial",
        started_at=started,
        trace_id=trace_id,
        processed=result.get("processed"),
        completed=result.get("completed"),
    )
    return result


@shared_task(bind=True, name="keymarket.tasks.settlement_tasks.reconcile_payouts", max_retries=3)
def reconcile_payouts(self, *, min_age_seconds: int = 60, trace_id: str = ""):
    started = time.perf_counter()
    try:
        result = get_engine().reconcile_payouts(min_age_seconds=int(min_age_seconds))
    except Exception as exc:
        db.session.rollback()
        _retry_or_raise(self, "reconcile_payouts", exc, started=started, trace_id=trace_id)
    _task_log(
        "reconcile_payouts",
        status="ok" if result.get("ok") else "unresolved",
        started_at=started,
        trace_id=trace_id,
        checked=result.get("checked"),
        unresolved=result.get("unresolved"),
    )
    return result


@shared_task(bind=True, name="keymarket.tasks.settlement_tasks.deliver_notification", max_retries=5)
def deliver_notification_task(self, *, user_id: str, event_kind: str, payload: dict, trace_id: str = ""):
    started = time.perf_counter()
    result = get_engine().notifier.deliver(user_id, event_kind, payload or {})
    if result.ok:
        _task_log("deliver_notification", status="ok", started_at=started, trace_id=trace_id, event_kind=event_kind)
        return {"ok": True, "code": result.code}
    _retry_or_raise(
        self,
        "deliver_notification",
        RuntimeError(result.message or result.code or "notification_failed"),
        started=started,
        trace_id=trace_id,
        event_kind=event_kind,
    )


@shared_task(bind=True, name="keymarket.tasks.settlement_tasks.process_payment_webhook", max_retries=5)
def process_payment_webhook_task(
    self,
    *,
    payload: dict,
    raw_text: str = "",
    signature: str | None = None,
    source: str = "api/webhooks/payments:queued",
    trace_id: str = "",
):
    from keymarket.services.webhook_service import process_payment_webhook

    started = time.perf_counter()
    body, code = process_payment_webhook(
        get_engine(),
        payload=payload if isinstance(payload, dict) else {},
        raw=(raw_text or "").encode("utf-8"),
        signature=signature,
        source=source,
    )
    if int(code) >= 500:
        _retry_or_raise(
            self,
            "process_payment_webhook",
            RuntimeError(f"webhook_status_{int(code)}"),
            started=started,
            trace_id=trace_id,
            status_code=int(code),
        )
    _task_log("process_payment_webhook", status="ok", started_at=started, trace_id=trace_id, status_code=int(code))
    return {"ok": True, "status_code": int(code), "body": body}
