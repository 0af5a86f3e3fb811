from __future__ import annotations

from dataclasses import dataclass


@dataclass
class NotificationResult:
    ok: bool
    code: str = ""
    message: str = ""


class NotificationProvider:
    name = "unknown"

    def send(self, *, user_id: str, event_kind: str, payload: dict) -> NotificationResult:
        raise NotImplementedError
