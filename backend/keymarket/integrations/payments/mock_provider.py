from __future__ import annotations

import threading
import uuid

from keymarket.errors import ExternalDependencyError, GatewayTimeout
from keymarket.integrations.payments.base import (
    IntentResult,
    IntentStatus,
    PaymentGateway,
    RefundResult,
    TransferResult,
)

_ACCEPT_THEN_TIMEOUT = object()


class MockPaymentGateway(PaymentGateway):
    """In-memory gateway for sandbox runs and tests.

    Honours idempotency keys like a real gateway and lets callers queue
    failures per operation, including a transfer that is accepted server-side
    but whose response never arrives.
    """

    name = "mock"

    def __init__(self, *, auto_settle: bool = True):
        self.auto_settle = bool(auto_settle)
        self.intents: dict[str, dict] = {}
        self.transfers: dict[str, dict] = {}
        self.refunds: dict[str, dict] = {}
        self.calls: list[tuple[str, dict]] = []
        self._by_key: dict[str, object] = {}
        self._failures: dict[str, list] = {}
        self._lock = threading.Lock()

    # failure injection

    def fail_next(self, op: str, error: Exception) -> None:
        with self._lock:
            self._failures.setdefault(op, []).append(error)

    def timeout_after_accept(self, op: str = "transfer") -> None:
        """Accept the next ``op`` call, then raise GatewayTimeout as if the response was lost."""
        if op not in ("transfer", "refund"):
            raise ValueError(f"timeout_after_accept supports transfer and refund, not {op}")
        with self._lock:
            self._failures.setdefault(op, []).append(_ACCEPT_THEN_TIMEOUT)

    def _pop_failure(self, op: str):
        with self._lock:
            queue = self._failures.get(op) or []
            return queue.pop(0) if queue else None

    # sandbox helpers

    def settle_intent(self, intent_ref: str, *, amount_minor: int | None = None, status: str = "succeeded") -> None:
        intent = self.intents[intent_ref]
        intent["status"] = status
        if amount_minor is not None:
            intent["amount_minor"] = int(amount_minor)

    def transfers_for(self, reference: str) -> list[dict]:
        return [t for t in self.transfers.values() if t["reference"] == reference]

    # gateway contract

    def create_intent(self, *, amount_minor, currency, destination_account, metadata, idempotency_key) -> IntentResult:
        self.calls.append(("create_intent", {"amount_minor": amount_minor, "idempotency_key": idempotency_key}))
        failure = self._pop_failure("create_intent")
        if failure is not None:
            raise failure
        with self._lock:
            cached = self._by_key.get(idempotency_key)
            if cached is not None:
                return cached
            ref = f"pi_mock_{uuid.uuid4().hex[:20]}"
            self.intents[ref] = {
                "amount_minor": int(amount_minor),
                "currency": (currency or "").lower(),
                "destination_account": destination_account,
                "metadata": dict(metadata or {}),
                "status": "succeeded" if self.auto_settle else "requires_payment",
            }
            result = IntentResult(
                intent_ref=ref,
                status=self.intents[ref]["status"],
                client_secret=f"{ref}_secret_mock",
                raw={"provider": self.name},
            )
            self._by_key[idempotency_key] = result
            return result

    def confirm_intent(self, intent_ref: str) -> IntentStatus:
        self.calls.append(("confirm_intent", {"intent_ref": intent_ref}))
        failure = self._pop_failure("confirm_intent")
        if failure is not None:
            raise failure
        intent = self.intents.get(intent_ref)
        if intent is None:
            raise ExternalDependencyError(
                f"payment intent {intent_ref} not found", transient=False, dependency="payments"
            )
        return IntentStatus(
            intent_ref=intent_ref,
            status=intent["status"],
            amount_minor=int(intent["amount_minor"]),
            currency=intent["currency"],
            metadata=dict(intent["metadata"]),
            raw={"provider": self.name},
        )

    def transfer(self, *, destination_account, amount_minor, currency, reference, idempotency_key) -> TransferResult:
        self.calls.append(("transfer", {"reference": reference, "idempotency_key": idempotency_key}))
        failure = self._pop_failure("transfer")
        if failure is not None and failure is not _ACCEPT_THEN_TIMEOUT:
            raise failure
        with self._lock:
            cached = self._by_key.get(idempotency_key)
            if cached is None:
                ref = f"tr_mock_{uuid.uuid4().hex[:20]}"
                self.transfers[ref] = {
                    "destination_account": destination_account,
                    "amount_minor": int(amount_minor),
                    "currency": (currency or "").lower(),
                    "reference": reference,
                }
                cached = TransferResult(transfer_ref=ref, amount_minor=int(amount_minor), raw={"reference": reference})
                self._by_key[idempotency_key] = cached
        if failure is _ACCEPT_THEN_TIMEOUT:
            raise GatewayTimeout("transfer response lost after acceptance")
        return cached

    def find_transfer(self, reference: str) -> TransferResult | None:
        self.calls.append(("find_transfer", {"reference": reference}))
        failure = self._pop_failure("find_transfer")
        if failure is not None:
            raise failure
        for ref, row in self.transfers.items():
            if row["reference"] == reference:
                return TransferResult(transfer_ref=ref, amount_minor=int(row["amount_minor"]), raw=dict(row))
        return None

    def refund(self, *, intent_ref, amount_minor, idempotency_key) -> RefundResult:
        self.calls.append(("refund", {"intent_ref": intent_ref, "idempotency_key": idempotency_key}))
        failure = self._pop_failure("refund")
        if failure is not None and failure is not _ACCEPT_THEN_TIMEOUT:
            raise failure
        with self._lock:
            result = self._by_key.get(idempotency_key)
            if result is None:
                ref = f"re_mock_{uuid.uuid4().hex[:20]}"
                self.refunds[ref] = {"intent_ref": intent_ref, "amount_minor": int(amount_minor)}
                result = RefundResult(refund_ref=ref, amount_minor=int(amount_minor), raw={"intent_ref": intent_ref})
                self._by_key[idempotency_key] = result
        if failure is _ACCEPT_THEN_TIMEOUT:
            raise GatewayTimeout("refund response lost after acceptance")
        return result
