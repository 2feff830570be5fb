"""Recurring gifting rules configured by owners."""

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
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from autogift_api.db.base import Base


class GiftEventTypeEnum(str, Enum):
    BIRTHDAY = "birthday"
    HOLIDAY = "holiday"
    CUSTOM = "custom"


class GiftingRule(Base):
    """One owner's standing instruction to gift a recipient for a recurring event.

    Rules are never hard-deleted; ``active`` is flipped off instead so the
    executions and orders that reference them stay auditable.
    """

    __tablename__ = "gifting_rules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    recipient_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    pending_recipient_email = Column(String, nullable=True)
    pending_recipient_name = Column(String, nullable=True)
    event_type = Column(
        SqlEnum(
            GiftEventTypeEnum,
            name="gift_event_type_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    holiday_key = Column(String(64), nullable=True)
    event_anchor = Column(String(10), nullable=True)
    budget_limit = Column(Numeric(12, 2), nullable=False, server_default="50")
    payment_method_ref = Column(String, nullable=True)
    scheduled_date = Column(Date, nullable=True, index=True)
    gift_preferences = Column(JSON, nullable=True)
    active = Column(Boolean, nullable=False, server_default="1", default=True)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    owner = relationship("User", foreign_keys=[owner_id])
    recipient = relationship("User", foreign_keys=[recipient_id])
    executions = relationship("GiftExecution", back_populates="rule")

    @property
    def has_pending_recipient(self) -> bool:
        return self.recipient_id is None and bool(self.pending_recipient_email)
