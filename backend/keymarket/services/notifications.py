from __future__ import annotations

import logging

from keymarket.integrations.notifications.base import NotificationProvider, NotificationResult
from keymarket.utils.observability import get_request_id

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Fire-and-forget delivery of order lifecycle notifications.

    A failed notification is logged and dropped; it never affects the state
    change that triggered it.
    """

    def __init__(self, provider: NotificationProvider, config):
        self.provider = provider
        self.config = config

    def notify(self, user_id: str | None, event_kind: str, payload: dict | None = None) -> None:
        if not user_id:
            return
        body = dict(payload or {})
        if self.config.notifications_async:
            try:
                from keymarket.tasks.settlement_tasks import deliver_notification_task

                deliver_notification_task.delay(
                    user_id=str(user_id),
                    event_kind=event_kind,
                    payload=body,
                    trace_id=get_request_id(),
                )
                return
            except Exception as exc:
                logger.warning("notify_enqueue_failed kind=%s user_id=%s err=%s", event_kind, user_id, exc)
        self.deliver(str(user_id), event_kind, body)

    def notify_many(self, user_ids, event_kind: str, payload: dict | None = None) -> None:
        seen = set()
        for uid in user_ids:
            if uid and uid not in seen:
                seen.add(uid)
                self.notify(uid, event_kind, payload)

    def notify_admins(self, event_kind: str, payload: dict | None = None) -> None:
        self.notify_many(self.config.admin_notify_ids, event_kind, payload)

    def deliver(self, user_id: str, event_kind: str, payload: dict) -> NotificationResult:
        try:
            result = self.provider.send(user_id=user_id, event_kind=event_kind, payload=payload)
        except Exception as exc:
            logger.warning("notify_failed kind=%s user_id=%s err=%s", event_kind, user_id, exc)
            return NotificationResult(ok=False, code="NOTIFY_EXCEPTION", message=str(exc))
        if not result.ok:
            logger.warning(
                "notify_rejected kind=%s user_id=%s code=%s msg=%s",
                event_kind,
                user_id,
                result.code,
                result.message,
            )
        return result
