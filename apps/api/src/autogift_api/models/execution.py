"""Gift executions: one fulfillment attempt per rule occurrence."""

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from autogift_api.db.base import Base


class ExecutionStatusEnum(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    PROCESSING = "processing"
    APPROVED = "approved"
    AWAITING_ADDRESS = "awaiting_address"
    PAYMENT_RETRY_PENDING = "payment_retry_pending"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"


APPROVABLE_EXECUTION_STATUSES = frozenset(
    {ExecutionStatusEnum.PENDING_APPROVAL, ExecutionStatusEnum.PROCESSING}
)


LIVE_OCCURRENCE_PREDICATE = "status <> 'failed'"


class AddressCollectionStatusEnum(str, Enum):
    REQUESTED = "requested"
    RECEIVED = "received"
    EXPIRED = "expired"


class GiftExecution(Base):
    __tablename__ = "gift_executions"
    __table_args__ = (
        # Failed executions may be superseded; every other status owns its occurrence.
        Index(
            "uq_gift_executions_live_occurrence",
            "rule_id",
            "occurrence_date",
            unique=True,
            postgresql_where=text(LIVE_OCCURRENCE_PREDICATE),
            sqlite_where=text(LIVE_OCCURRENCE_PREDICATE),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    rule_id = Column(UUID(as_uuid=True), ForeignKey("gifting_rules.id", ondelete="CASCADE"), nullable=False, index=True)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    occurrence_date = Column(Date, nullable=False)
    status = Column(
        SqlEnum(
            ExecutionStatusEnum,
            name="gift_execution_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        server_default=ExecutionStatusEnum.PENDING_APPROVAL.value,
    )
    suggested_products = Column(JSON, nullable=False, default=list)
    selected_products = Column(JSON, nullable=True)
    total_amount = Column(Numeric(12, 2), nullable=True)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    address_collection_status = Column(
        SqlEnum(
            AddressCollectionStatusEnum,
            name="address_collection_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=True,
    )
    address_metadata = Column(JSON, nullable=True)
    payment_retry_count = Column(Integer, nullable=False, server_default="0", default=0)
    next_payment_retry_at = Column(DateTime(timezone=True), nullable=True)
    last_payment_attempt_at = Column(DateTime(timezone=True), nullable=True)
    payment_error_message = Column(Text, nullable=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    decided_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    rule = relationship("GiftingRule", back_populates="executions")
    order = relationship("Order", foreign_keys=[order_id])
    address_requests = relationship("PendingRecipientAddress", back_populates="execution")
