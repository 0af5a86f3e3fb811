from __future__ import annotations

import requests

from keymarket.integrations.notifications.base import NotificationProvider, NotificationResult


class WebhookNotificationProvider(NotificationProvider):
    """Posts each notification as JSON to the messaging service."""

    name = "webhook"

    def __init__(self, url: str, *, timeout_seconds: float = 10.0):
        self.url = url
        self.timeout_seconds = float(timeout_seconds)

    def send(self, *, user_id: str, event_kind: str, payload: dict) -> NotificationResult:
        body = {"user_id": str(user_id), "event": event_kind, "payload": payload or {}}
        try:
            r = requests.post(self.url, json=body, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            return NotificationResult(ok=False, code="NOTIFY_UNREACHABLE", message=str(exc))
        if 200 <= r.status_code < 300:
            return NotificationResult(ok=True, code="SENT")
        return NotificationResult(ok=False, code="NOTIFY_HTTP_ERROR", message=f"HTTP {r.status_code}")
