"""Append-only audit trail for the gift pipeline."""

from enum import Enum
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum as SqlEnum, String, func
from sqlalchemy.dialects.postgresql import UUID

from autogift_api.db.base import Base


class PipelineEventTypeEnum(str, Enum):
    NOTIFICATION_SENT = "notification_sent"
    CHECKOUT_CREATED = "checkout_created"
    PROCESSING_FAILED = "processing_failed"
    APPROVAL_DECIDED = "approval_decided"
    ADDRESS_REQUESTED = "address_requested"
    ADDRESS_RECEIVED = "address_received"
    PAYMENT_ATTEMPTED = "payment_attempted"
    ORDER_STAGE_ADVANCED = "order_stage_advanced"


class PipelineEvent(Base):
    __tablename__ = "pipeline_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    event_type = Column(
        SqlEnum(
            PipelineEventTypeEnum,
            name="pipeline_event_type_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        index=True,
    )
    rule_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    execution_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    order_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    user_id = Column(UUID(as_uuid=True), nullable=True)
    stage = Column(String(64), nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    is_simulation = Column(Boolean, nullable=False, server_default="0", default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
