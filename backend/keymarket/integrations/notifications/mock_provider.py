from __future__ import annotations

from keymarket.integrations.notifications.base import NotificationProvider, NotificationResult


class MockNotificationProvider(NotificationProvider):
    name = "mock"

    def __init__(self):
        self.sent: list[dict] = []

    def send(self, *, user_id: str, event_kind: str, payload: dict) -> NotificationResult:
        self.sent.append({"user_id": str(user_id), "event_kind": event_kind, "payload": dict(payload or {})})
        return NotificationResult(ok=True, code="MOCK_SENT")

    def kinds_for(self, user_id: str) -> list[str]:
        return [row["event_kind"] for row in self.sent if row["user_id"] == str(user_id)]
