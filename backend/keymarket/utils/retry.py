from __future__ import annotations

import logging
import time

from keymarket.errors import ExternalDependencyError, GatewayTimeout, VersionConflict
from keymarket.extensions import db

logger = logging.getLogger(__name__)


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.05, sleep=time.sleep, label: str = ""):
    """
    Re-run a read-then-conditional-write unit when it loses to a concurrent writer.

    ``func`` must re-read whatever it needs on every call. Only version
    conflicts are retried; every other error propagates on the first attempt.
    """
    attempts = max(1, int(attempts or 1))
    for attempt in range(attempts):
        try:
            return func()
        except VersionConflict:
            db.session.rollback()
            if attempt >= attempts - 1:
                logger.warning("conflict_retry_exhausted label=%s attempts=%s", label, attempts)
                raise
            logger.info("conflict_retry label=%s attempt=%s", label, attempt + 1)
            if backoff_base > 0:
                sleep(backoff_base * (2 ** attempt))


def call_gateway(func, *, attempts: int = 3, backoff_base: float = 0.5, sleep=time.sleep, label: str = ""):
    """
    Call a collaborator, retrying transient failures with exponential backoff.

    Timeouts are not retried here: the first call may already have taken
    effect, so the caller decides how to find out.
    """
    attempts = max(1, int(attempts or 1))
    for attempt in range(attempts):
        try:
            return func()
        except GatewayTimeout:
            raise
        except ExternalDependencyError as exc:
            if not exc.transient or attempt >= attempts - 1:
                raise
            logger.warning(
                "gateway_retry label=%s attempt=%s err=%s",
                label,
                attempt + 1,
                exc.message,
            )
            if backoff_base > 0:
                sleep(backoff_base * (2 ** attempt))
