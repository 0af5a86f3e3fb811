from __future__ import annotations

from datetime import datetime

from flask import current_app

from keymarket.integrations.catalog.factory import build_shop_directory
from keymarket.integrations.notifications.factory import build_notification_provider
from keymarket.integrations.payments.factory import build_payment_gateway
from keymarket.jobs.auto_confirm_runner import AutoConfirmScheduler
from keymarket.jobs.payout_runner import run_payout_reconciliation, run_payout_sweep
from keymarket.services.checkout_service import CheckoutService
from keymarket.services.delivery_service import DeliveryRecorder
from keymarket.services.dispute_service import DisputeWorkflow
from keymarket.services.notifications import NotificationDispatcher
from keymarket.services.order_store import OrderStore
from keymarket.services.payment_reconciler import PaymentReconciler
from keymarket.services.payout_service import PayoutSettlementEngine
from keymarket.services.review_queue import ReviewQueue


class SettlementEngine:
    """Wires the order lifecycle components around one configuration.

    The public methods are the operations callers use; routes, CLI commands
    and Celery tasks all go through them.
    """

    def __init__(self, config, *, gateway, catalog, notification_provider, clock=None):
        self.config = config
        self.gateway = gateway
        self.catalog = catalog
        self.notifier = NotificationDispatcher(notification_provider, config)
        self.store = OrderStore(config, clock=clock)
        self.review_queue = ReviewQueue(self.notifier, clock=self.store.clock)
        self.checkout = CheckoutService(config, self.store, gateway, catalog)
        self.reconciler = PaymentReconciler(config, self.store, gateway, self.review_queue, self.notifier)
        self.payouts = PayoutSettlementEngine(config, self.store, gateway, catalog, self.review_queue, self.notifier)
        self.delivery = DeliveryRecorder(config, self.store, self.notifier, payouts=self.payouts)
        self.disputes = DisputeWorkflow(
            config,
            self.store,
            gateway,
            catalog,
            self.delivery,
            self.payouts,
            self.review_queue,
            self.notifier,
        )
        self.scheduler = AutoConfirmScheduler(config, self.store, self.payouts, self.notifier)

    def create_order(self, *, buyer_id, shop_id, items, checkout_session_key, currency=None):
        return self.checkout.create_order(
            buyer_id=buyer_id,
            shop_id=shop_id,
            items=items,
            checkout_session_key=checkout_session_key,
            currency=currency,
        )

    def confirm_payment(self, external_reference: str):
        return self.reconciler.confirm_payment(external_reference)

    def record_delivery(self, *, seller_id, order_id, payload, now: datetime | None = None):
        return self.delivery.record_delivery(seller_id=seller_id, order_id=order_id, payload=payload, now=now)

    def confirm_receipt(self, *, buyer_id, order_id, now: datetime | None = None):
        return self.delivery.confirm_receipt(buyer_id=buyer_id, order_id=order_id, now=now)

    def cancel_order(self, *, buyer_id, order_id):
        return self.delivery.cancel_order(order_id=order_id, actor_id=buyer_id, actor_type="buyer")

    def open_dispute(self, **kwargs):
        return self.disputes.open_dispute(**kwargs)

    def seller_respond_to_dispute(self, **kwargs):
        return self.disputes.seller_respond(**kwargs)

    def admin_resolve_dispute(self, **kwargs):
        return self.disputes.admin_resolve(**kwargs)

    def run_auto_confirm_sweep(self, *, now: datetime | None = None, limit: int | None = None) -> dict:
        return self.scheduler.run(now=now, limit=limit)

    def run_payout_sweep(self) -> dict:
        return run_payout_sweep(self)

    def reconcile_payouts(self, *, now: datetime | None = None, min_age_seconds: int = 60) -> dict:
        return run_payout_reconciliation(self, now=now, min_age_seconds=min_age_seconds)

    def get_order(self, order_id):
        return self.store.get(order_id)

    def get_seller_payouts(self, seller_id: str):
        return self.payouts.seller_payouts(seller_id)


def build_engine(config, *, gateway=None, catalog=None, notification_provider=None, clock=None) -> SettlementEngine:
    return SettlementEngine(
        config,
        gateway=gateway if gateway is not None else build_payment_gateway(config),
        catalog=catalog if catalog is not None else build_shop_directory(config),
        notification_provider=(
            notification_provider if notification_provider is not None else build_notification_provider(config)
        ),
        clock=clock,
    )


def get_engine() -> SettlementEngine:
    return current_app.extensions["keymarket"]
