from __future__ import annotations

from keymarket.integrations.common import IntegrationMisconfiguredError
from keymarket.integrations.notifications.base import NotificationProvider
from keymarket.integrations.notifications.mock_provider import MockNotificationProvider
from keymarket.integrations.notifications.webhook_provider import WebhookNotificationProvider


def build_notification_provider(config) -> NotificationProvider:
    provider = (config.notifications_provider or "mock").strip().lower()
    if provider == "mock":
        return MockNotificationProvider()
    if provider != "webhook":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:notifications_provider={provider}")
    if not config.notify_webhook_url:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing NOTIFY_WEBHOOK_URL")
    return WebhookNotificationProvider(config.notify_webhook_url, timeout_seconds=config.gateway_timeout_seconds)
