from __future__ import annotations

import logging
from datetime import datetime

from keymarket.extensions import db
from keymarket.utils.job_runs import record_job_run

logger = logging.getLogger(__name__)


def run_payout_sweep(engine) -> dict:
    started_at = datetime.utcnow()
    try:
        summary = engine.payouts.run_sweep().to_dict()
    except Exception as exc:
        db.session.rollback()
        record_job_run(job_name="payout_sweep", ok=False, started_at=started_at, error=str(exc))
        raise
    ok = not summary["errors"]
    summary["ok"] = ok
    record_job_run(
        job_name="payout_sweep",
        ok=ok,
        started_at=started_at,
        error=None if ok else f"errors={len(summary['errors'])}",
        summary=summary,
    )
    logger.info(
        "payout_sweep_done enqueued=%s processed=%s completed=%s failed=%s manual=%s in_flight=%s",
        summary["enqueued"],
        summary["processed"],
        summary["completed"],
        summary["failed"],
        summary["manual"],
        summary["in_flight"],
    )
    return summary


def run_payout_reconciliation(engine, *, now: datetime | None = None, min_age_seconds: int = 60) -> dict:
    started_at = datetime.utcnow()
    try:
        summary = engine.payouts.reconcile_processing_payouts(now=now, min_age_seconds=min_age_seconds)
    except Exception as exc:
        db.session.rollback()
        record_job_run(job_name="payout_reconcile", ok=False, started_at=started_at, error=str(exc))
        raise
    summary["ok"] = summary["unresolved"] == 0
    record_job_run(
        job_name="payout_reconcile",
        ok=summary["ok"],
        started_at=started_at,
        error=None if summary["ok"] else f"unresolved={summary['unresolved']}",
        summary=summary,
    )
    return summary
