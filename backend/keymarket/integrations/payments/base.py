from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field


@dataclass
class IntentResult:
    intent_ref: str
    status: str
    client_secret: str = ""
    raw: dict | None = None


@dataclass
class IntentStatus:
    intent_ref: str
    status: str
    amount_minor: int
    currency: str
    metadata: dict = field(default_factory=dict)
    raw: dict | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @property
    def failed(self) -> bool:
        return self.status in ("failed", "canceled")


@dataclass
class TransferResult:
    transfer_ref: str
    amount_minor: int
    status: str = "paid"
    raw: dict | None = None


@dataclass
class RefundResult:
    refund_ref: str
    amount_minor: int
    status: str = "succeeded"
    raw: dict | None = None


@dataclass
class WebhookPayment:
    event_id: str
    event_type: str
    intent_ref: str
    status: str
    amount_minor: int
    currency: str
    metadata: dict = field(default_factory=dict)


class PaymentGateway:
    """Payment gateway contract.

    Every mutating call takes an idempotency key derived from the order or
    payout id, so a retried call never charges, transfers or refunds twice.
    Implementations raise ``ExternalDependencyError`` (``transient`` set when a
    retry may help) and ``GatewayTimeout`` when the outcome is unknown.
    """

    name = "unknown"

    def create_intent(
        self,
        *,
        amount_minor: int,
        currency: str,
        destination_account: str | None,
        metadata: dict,
        idempotency_key: str,
    ) -> IntentResult:
        raise NotImplementedError

    def confirm_intent(self, intent_ref: str) -> IntentStatus:
        raise NotImplementedError

    def transfer(
        self,
        *,
        destination_account: str,
        amount_minor: int,
        currency: str,
        reference: str,
        idempotency_key: str,
    ) -> TransferResult:
        raise NotImplementedError

    def find_transfer(self, reference: str) -> TransferResult | None:
        raise NotImplementedError

    def refund(self, *, intent_ref: str, amount_minor: int, idempotency_key: str) -> RefundResult:
        raise NotImplementedError

    def verify_webhook(self, raw: bytes, signature: str | None, secret: str) -> bool:
        if not secret or not signature:
            return False
        expected = hmac.new(secret.encode("utf-8"), raw or b"", hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip())

    def parse_webhook(self, payload: dict) -> WebhookPayment:
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        return WebhookPayment(
            event_id=str(payload.get("id") or payload.get("event_id") or "").strip(),
            event_type=str(payload.get("type") or payload.get("event") or "").strip(),
            intent_ref=str(data.get("intent_ref") or data.get("reference") or "").strip(),
            status=str(data.get("status") or "").strip().lower(),
            amount_minor=int(data.get("amount_minor") or data.get("amount") or 0),
            currency=str(data.get("currency") or "").strip().lower(),
            metadata=dict(data.get("metadata") or {}),
        )
