"""Gift pipeline tables.

Revision ID: 20251020_01
Revises:
Create Date: 2025-10-20
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20251020_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)

gift_event_type_enum = sa.Enum("birthday", "holiday", "custom", name="gift_event_type_enum")
gift_execution_status_enum = sa.Enum(
    "pending_approval",
    "processing",
    "approved",
    "awaiting_address",
    "payment_retry_pending",
    "scheduled",
    "completed",
    "rejected",
    "failed",
    name="gift_execution_status_enum",
)
address_collection_status_enum = sa.Enum("requested", "received", "expired", name="address_collection_status_enum")
# Shared with gift_executions, which creates the type.
address_request_status_enum = postgresql.ENUM(
    "requested", "received", "expired", name="address_collection_status_enum", create_type=False
)
gift_order_status_enum = sa.Enum(
    "pending_payment",
    "scheduled",
    "payment_confirmed",
    "processing",
    "requires_attention",
    "failed",
    name="gift_order_status_enum",
)
pipeline_event_type_enum = sa.Enum(
    "notification_sent",
    "checkout_created",
    "processing_failed",
    "approval_decided",
    "address_requested",
    "address_received",
    "payment_attempted",
    "order_stage_advanced",
    name="pipeline_event_type_enum",
)
payment_attempt_status_enum = sa.Enum("succeeded", "failed", name="payment_attempt_status_enum")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("email", sa.String(), nullable=True, unique=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("dob", sa.String(length=10), nullable=True),
        sa.Column("stripe_customer_id", sa.String(), nullable=True),
        sa.Column("shipping_address", sa.JSON(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "wishlist_items",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=True),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("retailer", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("rating", sa.Float(), nullable=True),
        sa.Column("review_count", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_wishlist_items_user_id", "wishlist_items", ["user_id"])

    op.create_table(
        "gifting_rules",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("owner_id", UUID, nullable=False),
        sa.Column("recipient_id", UUID, nullable=True),
        sa.Column("pending_recipient_email", sa.String(), nullable=True),
        sa.Column("pending_recipient_name", sa.String(), nullable=True),
        sa.Column("event_type", gift_event_type_enum, nullable=False),
        sa.Column("holiday_key", sa.String(length=64), nullable=True),
        sa.Column("event_anchor", sa.String(length=10), nullable=True),
        sa.Column("budget_limit", sa.Numeric(12, 2), nullable=False, server_default="50"),
        sa.Column("payment_method_ref", sa.String(), nullable=True),
        sa.Column("scheduled_date", sa.Date(), nullable=True),
        sa.Column("gift_preferences", sa.JSON(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["recipient_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_gifting_rules_owner_id", "gifting_rules", ["owner_id"])
    op.create_index("ix_gifting_rules_scheduled_date", "gifting_rules", ["scheduled_date"])

    op.create_table(
        "orders",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("order_number", sa.String(), nullable=False, unique=True),
        sa.Column("user_id", UUID, nullable=True),
        sa.Column("gifting_rule_id", UUID, nullable=True),
        sa.Column("execution_id", UUID, nullable=True),
        sa.Column("recipient_id", UUID, nullable=True),
        sa.Column("recipient_email", sa.String(), nullable=True),
        sa.Column("recipient_name", sa.String(), nullable=True),
        sa.Column("status", gift_order_status_enum, nullable=False, server_default="pending_payment"),
        sa.Column("payment_status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("total", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("is_auto_gift", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("scheduled_delivery_date", sa.Date(), nullable=True),
        sa.Column("hold_for_scheduled_delivery", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("hold_until", sa.Date(), nullable=True),
        sa.Column("payment_method_ref", sa.String(), nullable=True),
        sa.Column("payment_authorization_ref", sa.String(), nullable=True),
        sa.Column("setup_intent_ref", sa.String(), nullable=True),
        sa.Column("fulfillment_request_id", sa.String(), nullable=True),
        sa.Column("shipping_address", sa.JSON(), nullable=True),
        sa.Column("line_items", sa.JSON(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("gift_message", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["gifting_rule_id"], ["gifting_rules.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("gifting_rule_id", "scheduled_delivery_date", name="uq_orders_rule_occurrence"),
    )
    op.create_index("ix_orders_gifting_rule_id", "orders", ["gifting_rule_id"])
    op.create_index("ix_orders_execution_id", "orders", ["execution_id"])
    op.create_index("ix_orders_scheduled_delivery_date", "orders", ["scheduled_delivery_date"])

    op.create_table(
        "gift_executions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("rule_id", UUID, nullable=False),
        sa.Column("owner_id", UUID, nullable=False),
        sa.Column("occurrence_date", sa.Date(), nullable=False),
        sa.Column("status", gift_execution_status_enum, nullable=False, server_default="pending_approval"),
        sa.Column("suggested_products", sa.JSON(), nullable=False),
        sa.Column("selected_products", sa.JSON(), nullable=True),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("order_id", UUID, nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("address_collection_status", address_collection_status_enum, nullable=True),
        sa.Column("address_metadata", sa.JSON(), nullable=True),
        sa.Column("payment_retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_payment_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payment_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_error_message", sa.Text(), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decided_by", sa.String(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["rule_id"], ["gifting_rules.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_gift_executions_rule_id", "gift_executions", ["rule_id"])
    op.create_index(
        "uq_gift_executions_live_occurrence",
        "gift_executions",
        ["rule_id", "occurrence_date"],
        unique=True,
        postgresql_where=sa.text("status <> 'failed'"),
    )

    op.create_table(
        "pending_recipient_addresses",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("execution_id", UUID, nullable=False),
        sa.Column("token", sa.String(length=128), nullable=False),
        sa.Column("recipient_email", sa.String(), nullable=False),
        sa.Column("recipient_name", sa.String(), nullable=True),
        sa.Column("requested_by", UUID, nullable=True),
        sa.Column("status", address_request_status_enum, nullable=False, server_default="requested"),
        sa.Column("shipping_address", sa.JSON(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("collected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["execution_id"], ["gift_executions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["requested_by"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_pending_recipient_addresses_execution_id", "pending_recipient_addresses", ["execution_id"])
    op.create_index("ix_pending_recipient_addresses_token", "pending_recipient_addresses", ["token"], unique=True)

    op.create_table(
        "pipeline_events",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("event_type", pipeline_event_type_enum, nullable=False),
        sa.Column("rule_id", UUID, nullable=True),
        sa.Column("execution_id", UUID, nullable=True),
        sa.Column("order_id", UUID, nullable=True),
        sa.Column("user_id", UUID, nullable=True),
        sa.Column("stage", sa.String(length=64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("is_simulation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_pipeline_events_event_type", "pipeline_events", ["event_type"])
    op.create_index("ix_pipeline_events_rule_id", "pipeline_events", ["rule_id"])
    op.create_index("ix_pipeline_events_execution_id", "pipeline_events", ["execution_id"])
    op.create_index("ix_pipeline_events_order_id", "pipeline_events", ["order_id"])

    op.create_table(
        "payment_attempts",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("execution_id", UUID, nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", payment_attempt_status_enum, nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("payment_method_ref", sa.String(), nullable=True),
        sa.Column("payment_intent_ref", sa.String(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("decline_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_payment_attempts_execution_id", "payment_attempts", ["execution_id"])

    op.create_table(
        "pipeline_runs",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("job", sa.String(length=64), nullable=False),
        sa.Column("triggered_by", sa.String(length=64), nullable=False),
        sa.Column("reference_date", sa.Date(), nullable=False),
        sa.Column("simulated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="running"),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("summary", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_pipeline_runs_job", "pipeline_runs", ["job"])


def downgrade() -> None:
    op.drop_index("ix_pipeline_runs_job", table_name="pipeline_runs")
    op.drop_table("pipeline_runs")
    op.drop_index("ix_payment_attempts_execution_id", table_name="payment_attempts")
    op.drop_table("payment_attempts")
    for index in ("order_id", "execution_id", "rule_id", "event_type"):
        op.drop_index(f"ix_pipeline_events_{index}", table_name="pipeline_events")
    op.drop_table("pipeline_events")
    op.drop_index("ix_pending_recipient_addresses_token", table_name="pending_recipient_addresses")
    op.drop_index("ix_pending_recipient_addresses_execution_id", table_name="pending_recipient_addresses")
    op.drop_table("pending_recipient_addresses")
    op.drop_index("uq_gift_executions_live_occurrence", table_name="gift_executions")
    op.drop_index("ix_gift_executions_rule_id", table_name="gift_executions")
    op.drop_table("gift_executions")
    op.drop_index("ix_orders_scheduled_delivery_date", table_name="orders")
    op.drop_index("ix_orders_execution_id", table_name="orders")
    op.drop_index("ix_orders_gifting_rule_id", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_gifting_rules_scheduled_date", table_name="gifting_rules")
    op.drop_index("ix_gifting_rules_owner_id", table_name="gifting_rules")
    op.drop_table("gifting_rules")
    op.drop_index("ix_wishlist_items_user_id", table_name="wishlist_items")
    op.drop_table("wishlist_items")
    op.drop_table("users")

    bind = op.get_bind()
    for enum in (
        payment_attempt_status_enum,
        pipeline_event_type_enum,
        gift_order_status_enum,
        address_collection_status_enum,
        gift_execution_status_enum,
        gift_event_type_enum,
    ):
        enum.drop(bind, checkfirst=True)
