from __future__ import annotations

from keymarket.integrations.common import IntegrationMisconfiguredError
from keymarket.integrations.payments.base import PaymentGateway
from keymarket.integrations.payments.mock_provider import MockPaymentGateway
from keymarket.integrations.payments.stripe_provider import StripePaymentGateway


def build_payment_gateway(config) -> PaymentGateway:
    provider = (config.payments_provider or "mock").strip().lower()
    if provider == "mock":
        if config.is_live:
            raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:mock payments in live mode")
        return MockPaymentGateway(auto_settle=True)
    if provider != "stripe":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")
    if not config.stripe_secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing STRIPE_SECRET_KEY")
    return StripePaymentGateway(config.stripe_secret_key, timeout_seconds=config.gateway_timeout_seconds)


def payment_health(config) -> dict:
    provider = (config.payments_provider or "mock").strip().lower()
    missing = []
    if provider == "stripe" and not config.stripe_secret_key:
        missing.append("STRIPE_SECRET_KEY")
    if config.is_live and not config.webhook_secret:
        missing.append("PAYMENTS_WEBHOOK_SECRET")
    return {
        "status": "misconfigured" if missing else "configured",
        "mode": config.payment_mode,
        "provider": provider,
        "missing": missing,
    }
