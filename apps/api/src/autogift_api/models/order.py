from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from autogift_api.db.base import Base


class OrderStatusEnum(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    SCHEDULED = "scheduled"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PROCESSING = "processing"
    REQUIRES_ATTENTION = "requires_attention"
    FAILED = "failed"


class PaymentStatusEnum(str, Enum):
    """Well-known payment states. The captured label itself is configurable."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("gifting_rule_id", "scheduled_delivery_date", name="uq_orders_rule_occurrence"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    order_number = Column(String, nullable=False, unique=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    gifting_rule_id = Column(
        UUID(as_uuid=True), ForeignKey("gifting_rules.id", ondelete="SET NULL"), nullable=True, index=True
    )
    # Plain column; gift_executions already points back at orders.
    execution_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    recipient_id = Column(UUID(as_uuid=True), nullable=True)
    recipient_email = Column(String, nullable=True)
    recipient_name = Column(String, nullable=True)
    status = Column(
        SqlEnum(
            OrderStatusEnum,
            name="gift_order_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        server_default=OrderStatusEnum.PENDING_PAYMENT.value,
    )
    payment_status = Column(String(32), nullable=False, server_default=PaymentStatusEnum.PENDING.value)
    total = Column(Numeric(12, 2), nullable=False, server_default="0")
    currency = Column(String(3), nullable=False, server_default="usd")
    is_auto_gift = Column(Boolean, nullable=False, server_default="0", default=False)
    scheduled_delivery_date = Column(Date, nullable=True, index=True)
    hold_for_scheduled_delivery = Column(Boolean, nullable=False, server_default="0", default=False)
    hold_until = Column(Date, nullable=True)
    payment_method_ref = Column(String, nullable=True)
    payment_authorization_ref = Column(String, nullable=True)
    setup_intent_ref = Column(String, nullable=True)
    fulfillment_request_id = Column(String, nullable=True)
    shipping_address = Column(JSON, nullable=True)
    line_items = Column(JSON, nullable=False, default=list)
    metadata_json = Column("metadata", JSON, nullable=True)
    gift_message = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    captured_at = Column(DateTime(timezone=True), nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
