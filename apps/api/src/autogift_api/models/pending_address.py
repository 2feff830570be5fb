from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Enum as SqlEnum, ForeignKey, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from autogift_api.db.base import Base
from .execution import AddressCollectionStatusEnum


class PendingRecipientAddress(Base):
    """Single-use address collection token issued for an execution."""

    __tablename__ = "pending_recipient_addresses"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    execution_id = Column(
        UUID(as_uuid=True),
        ForeignKey("gift_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    token = Column(String(128), nullable=False, unique=True, index=True)
    recipient_email = Column(String, nullable=False)
    recipient_name = Column(String, nullable=True)
    requested_by = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    status = Column(
        SqlEnum(
            AddressCollectionStatusEnum,
            name="address_collection_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        server_default=AddressCollectionStatusEnum.REQUESTED.value,
    )
    shipping_address = Column(JSON, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    collected_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    execution = relationship("GiftExecution", back_populates="address_requests")
