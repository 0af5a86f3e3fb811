"""order escrow settlement tables

Revision ID: 3c1d5e7f9a20
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "3c1d5e7f9a20"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def _created_updated():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    ]


def upgrade():
    bind = op.get_bind()

    if not _table_exists(bind, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("buyer_id", sa.String(length=64), nullable=False),
            sa.Column("seller_id", sa.String(length=64), nullable=False),
            sa.Column("shop_id", sa.String(length=64), nullable=False),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="thb"),
            sa.Column("total_amount_minor", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("platform_fee_minor", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("seller_amount_minor", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("refunded_amount_minor", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("checkout_session_key", sa.String(length=128), nullable=True, unique=True),
            sa.Column("payment_intent_ref", sa.String(length=128), nullable=True),
            sa.Column("external_payment_reference", sa.String(length=128), nullable=True, unique=True),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="payment_pending"),
            sa.Column("delivery_payload", sa.Text(), nullable=True),
            sa.Column("delivered_at", sa.DateTime(), nullable=True),
            sa.Column("auto_confirm_deadline", sa.DateTime(), nullable=True),
            sa.Column("buyer_confirmed_at", sa.DateTime(), nullable=True),
            sa.Column("auto_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            sa.Column("refunded_at", sa.DateTime(), nullable=True),
            sa.Column("dispute_id", sa.Integer(), nullable=True),
            sa.Column("payout_id", sa.Integer(), nullable=True),
            *_created_updated(),
            sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.CheckConstraint(
                "platform_fee_minor + seller_amount_minor = total_amount_minor",
                name="ck_orders_amount_split",
            ),
            sa.CheckConstraint("total_amount_minor >= 0", name="ck_orders_total_non_negative"),
        )
        for col in ("buyer_id", "seller_id", "shop_id", "payment_intent_ref", "status", "auto_confirm_deadline", "dispute_id", "payout_id"):
            op.create_index(f"ix_orders_{col}", "orders", [col])

    if not _table_exists(bind, "order_items"):
        op.create_table(
            "order_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("product_ref", sa.String(length=128), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.Column("unit_price_minor", sa.Integer(), nullable=False, server_default=sa.text("0")),
        )
        op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    if not _table_exists(bind, "order_transitions"):
        op.create_table(
            "order_transitions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("from_status", sa.String(length=32), nullable=False, server_default=""),
            sa.Column("to_status", sa.String(length=32), nullable=False),
            sa.Column("from_version", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("to_version", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
            sa.Column("actor_id", sa.String(length=64), nullable=True),
            sa.Column("reason", sa.String(length=240), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        )
        op.create_index("ix_order_transitions_order_id", "order_transitions", ["order_id"])

    if not _table_exists(bind, "disputes"):
        op.create_table(
            "disputes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("open_order_id", sa.Integer(), nullable=True, unique=True),
            sa.Column("buyer_id", sa.String(length=64), nullable=False),
            sa.Column("seller_id", sa.String(length=64), nullable=False),
            sa.Column("category", sa.String(length=32), nullable=False),
            sa.Column("subject", sa.String(length=200), nullable=False, server_default=""),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("evidence_json", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="open"),
            sa.Column("seller_action", sa.String(length=32), nullable=True),
            sa.Column("seller_note", sa.Text(), nullable=True),
            sa.Column("seller_responded_at", sa.DateTime(), nullable=True),
            sa.Column("pending_refund_action", sa.String(length=32), nullable=True),
            sa.Column("pending_refund_minor", sa.Integer(), nullable=True),
            sa.Column("resolution_action", sa.String(length=32), nullable=True),
            sa.Column("resolution_note", sa.Text(), nullable=True),
            sa.Column("resolution_refund_minor", sa.Integer(), nullable=True),
            sa.Column("resolved_by", sa.String(length=64), nullable=True),
            sa.Column("resolved_at", sa.DateTime(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            *_created_updated(),
        )
        for col in ("order_id", "buyer_id", "seller_id", "status"):
            op.create_index(f"ix_disputes_{col}", "disputes", [col])

    if not _table_exists(bind, "payouts"):
        op.create_table(
            "payouts",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("seller_id", sa.String(length=64), nullable=False),
            sa.Column("shop_id", sa.String(length=64), nullable=False),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="thb"),
            sa.Column("amount_minor", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
            sa.Column("destination_account", sa.String(length=128), nullable=True),
            sa.Column("external_transfer_reference", sa.String(length=128), nullable=True, unique=True),
            sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("processing_started_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            *_created_updated(),
            sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        )
        for col in ("seller_id", "shop_id", "status"):
            op.create_index(f"ix_payouts_{col}", "payouts", [col])

    if not _table_exists(bind, "payout_items"):
        op.create_table(
            "payout_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("payout_id", sa.Integer(), sa.ForeignKey("payouts.id"), nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False, unique=True),
            sa.Column("amount_minor", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        )
        op.create_index("ix_payout_items_payout_id", "payout_items", ["payout_id"])

    if not _table_exists(bind, "payout_attempts"):
        op.create_table(
            "payout_attempts",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("payout_id", sa.Integer(), sa.ForeignKey("payouts.id"), nullable=False),
            sa.Column("attempt_no", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.Column("idempotency_key", sa.String(length=160), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="started"),
            sa.Column("transfer_reference", sa.String(length=128), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("started_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("finished_at", sa.DateTime(), nullable=True),
            sa.UniqueConstraint("payout_id", "attempt_no", name="uq_payout_attempt_no"),
        )
        op.create_index("ix_payout_attempts_payout_id", "payout_attempts", ["payout_id"])

    if not _table_exists(bind, "review_queue_items"):
        op.create_table(
            "review_queue_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("kind", sa.String(length=48), nullable=False),
            sa.Column("subject_type", sa.String(length=32), nullable=False, server_default="order"),
            sa.Column("subject_id", sa.String(length=128), nullable=True),
            sa.Column("dedupe_key", sa.String(length=200), nullable=True, unique=True),
            sa.Column("details_json", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
            sa.Column("resolution_note", sa.Text(), nullable=True),
            sa.Column("resolved_by", sa.String(length=64), nullable=True),
            sa.Column("resolved_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        )
        for col in ("kind", "subject_id", "status", "created_at"):
            op.create_index(f"ix_review_queue_items_{col}", "review_queue_items", [col])

    if not _table_exists(bind, "webhook_events"):
        op.create_table(
            "webhook_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default="mock"),
            sa.Column("event_id", sa.String(length=128), nullable=False, unique=True),
            sa.Column("event_type", sa.String(length=64), nullable=True),
            sa.Column("reference", sa.String(length=128), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="received"),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("payload_hash", sa.String(length=128), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        )
        op.create_index("ix_webhook_events_reference", "webhook_events", ["reference"])

    if not _table_exists(bind, "idempotency_keys"):
        op.create_table(
            "idempotency_keys",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(length=128), nullable=False),
            sa.Column("scope", sa.String(length=128), nullable=False, server_default=""),
            sa.Column("user_id", sa.String(length=64), nullable=True),
            sa.Column("request_hash", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("response_json", sa.Text(), nullable=True),
            sa.Column("status_code", sa.Integer(), nullable=False, server_default=sa.text("200")),
            *_created_updated(),
            sa.UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
        )
        op.create_index("ix_idempotency_keys_key", "idempotency_keys", ["key"])

    if not _table_exists(bind, "platform_events"):
        op.create_table(
            "platform_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_id", sa.String(length=64), nullable=True),
            sa.Column("subject_type", sa.String(length=80), nullable=True),
            sa.Column("subject_id", sa.String(length=120), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("idempotency_key", sa.String(length=180), nullable=True, unique=True),
            sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
        for col in ("created_at", "event_type", "actor_id", "subject_type", "subject_id", "severity"):
            op.create_index(f"ix_platform_events_{col}", "platform_events", [col])

    if not _table_exists(bind, "job_runs"):
        op.create_table(
            "job_runs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("job_name", sa.String(length=64), nullable=False),
            sa.Column("ran_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("summary_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
        )
        op.create_index("ix_job_runs_job_name", "job_runs", ["job_name"])
        op.create_index("ix_job_runs_ran_at", "job_runs", ["ran_at"])


def downgrade():
    bind = op.get_bind()
    for table in (
        "job_runs",
        "platform_events",
        "idempotency_keys",
        "webhook_events",
        "review_queue_items",
        "payout_attempts",
        "payout_items",
        "payouts",
        "disputes",
        "order_transitions",
        "order_items",
        "orders",
    ):
        if _table_exists(bind, table):
            op.drop_table(table)
