from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, Integer, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from autogift_api.db.base import Base


class PaymentAttemptStatusEnum(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentAttempt(Base):
    """One authorization attempt against the payment gateway."""

    __tablename__ = "payment_attempts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    execution_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False, server_default="1")
    status = Column(
        SqlEnum(
            PaymentAttemptStatusEnum,
            name="payment_attempt_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, server_default="usd")
    payment_method_ref = Column(String, nullable=True)
    payment_intent_ref = Column(String, nullable=True)
    error_code = Column(String, nullable=True)
    decline_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
