"""Profile records owned by the surrounding application (read-only here)."""

from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from autogift_api.db.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    email = Column(String, nullable=True, unique=True)
    display_name = Column(String, nullable=True)
    dob = Column(String(10), nullable=True)
    stripe_customer_id = Column(String, nullable=True)
    shipping_address = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    wishlist_items = relationship("WishlistItem", back_populates="user", cascade="all, delete-orphan")
