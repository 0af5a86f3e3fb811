from __future__ import annotations

import hashlib
import hmac
import logging
import time

import requests

from keymarket.errors import ExternalDependencyError
from keymarket.integrations.common import raise_for_status, transport_error
from keymarket.integrations.payments.base import (
    IntentResult,
    IntentStatus,
    PaymentGateway,
    RefundResult,
    TransferResult,
    WebhookPayment,
)

logger = logging.getLogger(__name__)

_API_BASE = "https://api.stripe.com/v1"
_SIGNATURE_TOLERANCE_SECONDS = 300


def _flatten_metadata(metadata: dict | None) -> dict:
    return {f"metadata[{k}]": str(v) for k, v in (metadata or {}).items() if v is not None}


class StripePaymentGateway(PaymentGateway):
    """Separate charges and transfers against Stripe Connect accounts."""

    name = "stripe"

    def __init__(self, secret_key: str, *, timeout_seconds: float = 25.0, api_base: str = _API_BASE):
        self.secret_key = secret_key
        self.timeout_seconds = float(timeout_seconds)
        self.api_base = api_base.rstrip("/")

    def _request(self, method: str, path: str, *, data: dict | None = None, params: dict | None = None, idempotency_key: str = "") -> dict:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            r = requests.request(
                method,
                f"{self.api_base}{path}",
                headers=headers,
                data=data,
                params=params,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise transport_error(exc, dependency="payments") from exc
        try:
            j = r.json() if r.content else {}
        except ValueError:
            j = {}
        err = (j.get("error") or {}) if isinstance(j, dict) else {}
        raise_for_status(r.status_code, str(err.get("message") or err.get("code") or ""), dependency="payments", body=err)
        return j if isinstance(j, dict) else {}

    def create_intent(self, *, amount_minor, currency, destination_account, metadata, idempotency_key) -> IntentResult:
        data = {
            "amount": int(amount_minor),
            "currency": (currency or "").lower(),
            "automatic_payment_methods[enabled]": "true",
        }
        data.update(_flatten_metadata(metadata))
        if destination_account:
            data["metadata[destination_account]"] = destination_account
        j = self._request("POST", "/payment_intents", data=data, idempotency_key=idempotency_key)
        return IntentResult(
            intent_ref=str(j.get("id") or ""),
            status=str(j.get("status") or ""),
            client_secret=str(j.get("client_secret") or ""),
            raw=j,
        )

    def confirm_intent(self, intent_ref: str) -> IntentStatus:
        j = self._request("GET", f"/payment_intents/{intent_ref}")
        return IntentStatus(
            intent_ref=str(j.get("id") or intent_ref),
            status=str(j.get("status") or "").lower(),
            amount_minor=int(j.get("amount_received") or j.get("amount") or 0),
            currency=str(j.get("currency") or "").lower(),
            metadata=dict(j.get("metadata") or {}),
            raw=j,
        )

    def transfer(self, *, destination_account, amount_minor, currency, reference, idempotency_key) -> TransferResult:
        data = {
            "amount": int(amount_minor),
            "currency": (currency or "").lower(),
            "destination": destination_account,
            "transfer_group": reference,
            "metadata[reference]": reference,
        }
        try:
            j = self._request("POST", "/transfers", data=data, idempotency_key=idempotency_key)
        except ExternalDependencyError as exc:
            body = (exc.details or {}).get("body") or {}
            # Bad destination accounts never succeed on retry.
            if str(body.get("code") or "") in ("account_invalid", "no_account", "resource_missing"):
                exc.transient = False
            raise
        return TransferResult(transfer_ref=str(j.get("id") or ""), amount_minor=int(j.get("amount") or 0), raw=j)

    def find_transfer(self, reference: str) -> TransferResult | None:
        j = self._request("GET", "/transfers", params={"transfer_group": reference, "limit": 1})
        rows = j.get("data") or []
        if not rows:
            return None
        row = rows[0]
        return TransferResult(transfer_ref=str(row.get("id") or ""), amount_minor=int(row.get("amount") or 0), raw=row)

    def refund(self, *, intent_ref, amount_minor, idempotency_key) -> RefundResult:
        data = {"payment_intent": intent_ref, "amount": int(amount_minor)}
        j = self._request("POST", "/refunds", data=data, idempotency_key=idempotency_key)
        return RefundResult(
            refund_ref=str(j.get("id") or ""),
            amount_minor=int(j.get("amount") or 0),
            status=str(j.get("status") or ""),
            raw=j,
        )

    def verify_webhook(self, raw: bytes, signature: str | None, secret: str) -> bool:
        if not secret or not signature:
            return False
        parts = {}
        for item in signature.split(","):
            k, _, v = item.partition("=")
            parts.setdefault(k.strip(), []).append(v.strip())
        timestamp = (parts.get("t") or [""])[0]
        if not timestamp.isdigit():
            return False
        if abs(int(time.time()) - int(timestamp)) > _SIGNATURE_TOLERANCE_SECONDS:
            logger.warning("stripe_webhook_signature_stale t=%s", timestamp)
            return False
        signed = f"{timestamp}.".encode("utf-8") + (raw or b"")
        expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return any(hmac.compare_digest(expected, candidate) for candidate in parts.get("v1") or [])

    def parse_webhook(self, payload: dict) -> WebhookPayment:
        obj = ((payload.get("data") or {}).get("object")) or {}
        event_type = str(payload.get("type") or "")
        status = str(obj.get("status") or "").lower()
        if event_type == "payment_intent.payment_failed":
            status = "failed"
        return WebhookPayment(
            event_id=str(payload.get("id") or ""),
            event_type=event_type,
            intent_ref=str(obj.get("id") or ""),
            status=status,
            amount_minor=int(obj.get("amount_received") or obj.get("amount") or 0),
            currency=str(obj.get("currency") or "").lower(),
            metadata=dict(obj.get("metadata") or {}),
        )
